"""
qrun - orchestrates batches of query executions against a query backend.
"""

__version__ = "0.1.0"
