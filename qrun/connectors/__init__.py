"""
Backend connectors.
"""

from qrun.connectors.postgres_pool import PoolRegistry, PostgresConnectionPool

__all__ = ["PoolRegistry", "PostgresConnectionPool"]
