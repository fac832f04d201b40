#!/usr/bin/env python3
"""Run a batch of queries against Postgres with loop, async and failure policies."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Type

from qrun.api.app import RunMonitor, create_gateway_app, create_monitoring_app
from qrun.api.server import EndpointServer
from qrun.config import settings
from qrun.core.config_loader import RunConfigLoader, deep_merge, load_query_file
from qrun.core.errors import ConfigurationError
from qrun.core.outputs import OutputRegistry
from qrun.core.postgres_runner import PostgresRunner
from qrun.core.runner import QueryRunner
from qrun.core.scheduler import ExecutionScheduler
from qrun.models import (
    JOB_EXECUTION_CASES,
    AsyncVerbose,
    PlanFormat,
    QueryAction,
    ResultFormat,
    RunConfig,
    TraceOptType,
)

logger = logging.getLogger("qrun")

RunnerFactory = Callable[[RunConfig, OutputRegistry], QueryRunner]


def _choices(values) -> dict[str, Any]:
    """argparse kwargs mapping choice strings onto enum members."""
    members = list(values)
    enum_type: Type[Enum] = type(members[0])
    return {
        "type": enum_type,
        "choices": members,
        "metavar": "{" + ",".join(m.value for m in members) + "}",
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qrun",
        description="Execute scheme and script queries against Postgres.",
    )

    # Inputs
    parser.add_argument("--config", type=Path, default=None, help="YAML run file.")
    parser.add_argument(
        "-s", "--scheme-query", type=Path, default=None, metavar="FILE",
        help="Scheme query to execute first (typically DDL).",
    )
    parser.add_argument(
        "-p", "--script-query", type=Path, action="append", default=None, metavar="FILE",
        help="Script query to execute (typically DML). Repeatable.",
    )
    parser.add_argument(
        "--templates", action="store_true", default=None,
        help="Enable ${QRUN_TOKEN} and ${QUERY_ID} templates in -s and -p queries.",
    )

    # Outputs
    parser.add_argument("--log-file", default=None, help="File with execution logs (stderr if empty).")
    parser.add_argument(
        "-T", "--trace-opt", default=None, **_choices(TraceOptType),
        help="Log every statement of the chosen phase before running it.",
    )
    parser.add_argument("--trace-id", action="append", default=None, help="Trace id for -p queries. Repeatable.")
    parser.add_argument("--result-file", default=None, help="File with script results ('-' = stdout).")
    parser.add_argument("-L", "--result-rows-limit", type=int, default=None, help="Rows limit for script results.")
    parser.add_argument("-R", "--result-format", default=None, **_choices(ResultFormat), help="Script result format.")
    parser.add_argument("--scheme-ast-file", default=None, help="File with scheme query statements ('-' = stdout).")
    parser.add_argument("--script-ast-file", default=None, help="File with script query statements ('-' = stdout).")
    parser.add_argument("--script-plan-file", default=None, help="File with script query plans ('-' = stdout).")
    parser.add_argument("--script-statistics", default=None, help="File with in-progress script statistics.")
    parser.add_argument("-P", "--plan-format", default=None, **_choices(PlanFormat), help="Script query plan format.")

    # Pipeline settings
    parser.add_argument(
        "-C", "--execution-case", action="append", default=None, **_choices(JOB_EXECUTION_CASES),
        help="Execution case for -p queries. Repeatable.",
    )
    parser.add_argument(
        "--inflight-limit", type=int, default=None,
        help="In flight limit for async queries (0 = unlimited).",
    )
    parser.add_argument("--async-verbose", default=None, **_choices(AsyncVerbose), help="Async query logging.")
    parser.add_argument(
        "-A", "--script-action", action="append", default=None, **_choices(QueryAction),
        help="Action for -p queries. Repeatable.",
    )
    parser.add_argument("--timeout", type=int, action="append", default=None, help="Timeout in ms for -p queries. Repeatable.")
    parser.add_argument("--cancel-after", type=int, default=None, help="Cancel script operations after this delay (ms, 0 = disabled).")
    parser.add_argument(
        "-F", "--forget", action="store_true", default=None,
        help="Forget script execution operation after fetching results.",
    )
    parser.add_argument("--loop-count", type=int, default=None, help="Number of runs of the script queries (0 = infinite).")
    parser.add_argument("--loop-delay", type=int, default=None, help="Delay in ms between loop steps.")
    parser.add_argument(
        "--continue-after-fail", action="store_true", default=None,
        help="Don't stop execution after a failed query.",
    )
    parser.add_argument("-D", "--database", action="append", default=None, help="Database for -p queries. Repeatable.")
    parser.add_argument("-U", "--user", action="append", default=None, help="Role for -p queries. Repeatable.")
    parser.add_argument("--pool", action="append", default=None, help="Connection pool id for -p queries. Repeatable.")
    parser.add_argument("--same-session", action="store_true", default=None, help="Run all -p queries in one session.")

    # Endpoints
    parser.add_argument(
        "-M", "--monitoring", type=int, default=None, metavar="PORT",
        help="Monitoring endpoint port (0 = random); keeps qrun running as a daemon.",
    )
    parser.add_argument(
        "-G", "--gateway", type=int, default=None, metavar="PORT",
        help="Query gateway port (0 = random); keeps qrun running as a daemon.",
    )
    return parser


def _set(target: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        target[key] = value


def _args_to_config(args: argparse.Namespace) -> dict[str, Any]:
    """Raw configuration dict holding only the options given on the command line."""
    execution: dict[str, Any] = {}
    overrides: dict[str, Any] = {}
    runner: dict[str, Any] = {}

    if args.scheme_query is not None:
        execution["scheme_query"] = load_query_file(args.scheme_query)
    if args.script_query:
        execution["script_queries"] = [load_query_file(p) for p in args.script_query]
    _set(execution, "use_templates", args.templates)
    _set(execution, "loop_count", args.loop_count)
    _set(execution, "loop_delay_ms", args.loop_delay)
    _set(execution, "continue_after_fail", args.continue_after_fail)
    _set(execution, "forget_execution", args.forget)
    _set(execution, "result_rows_limit", args.result_rows_limit)

    _set(overrides, "execution_cases", args.execution_case)
    _set(overrides, "actions", args.script_action)
    _set(overrides, "databases", args.database)
    _set(overrides, "trace_ids", args.trace_id)
    _set(overrides, "pool_ids", args.pool)
    _set(overrides, "user_sids", args.user)
    _set(overrides, "timeouts_ms", args.timeout)
    if overrides:
        execution["overrides"] = overrides

    _set(runner, "same_session", args.same_session)
    _set(runner, "inflight_limit", args.inflight_limit)
    _set(runner, "async_verbose", args.async_verbose)
    _set(runner, "trace_opt", args.trace_opt)
    _set(runner, "cancel_after_ms", args.cancel_after)
    _set(runner, "result_output", args.result_file)
    _set(runner, "result_format", args.result_format)
    _set(runner, "plan_format", args.plan_format)
    _set(runner, "scheme_ast_output", args.scheme_ast_file)
    _set(runner, "script_ast_output", args.script_ast_file)
    _set(runner, "script_plan_output", args.script_plan_file)
    _set(runner, "in_progress_statistics_output", args.script_statistics)
    _set(runner, "monitoring_port", args.monitoring)
    _set(runner, "gateway_port", args.gateway)

    return {"execution": execution, "runner": runner}


def load_run_config(args: argparse.Namespace) -> RunConfig:
    """
    Build the run configuration: the YAML run file (if any) with command line
    options on top. Script queries from -p are appended to the file's.
    """
    loader = RunConfigLoader()
    base: dict[str, Any] = {}
    if args.config is not None:
        base = loader.load_file(args.config)

    cli = _args_to_config(args)
    file_queries = list((base.get("execution") or {}).get("script_queries") or [])
    cli_queries = cli["execution"].pop("script_queries", [])
    merged = deep_merge(base, cli)
    if file_queries or cli_queries:
        merged.setdefault("execution", {})["script_queries"] = file_queries + cli_queries
    return loader.build(merged)


def configure_logging(log_file: Optional[str] = None) -> None:
    """Log to stderr, or to ``log_file`` truncated on start."""
    log_file = log_file or settings.LOG_FILE
    handler: logging.Handler = (
        logging.FileHandler(log_file, mode="w") if log_file else logging.StreamHandler()
    )
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format=settings.LOG_FORMAT,
        handlers=[handler],
        force=True,
    )
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def _default_runner(config: RunConfig, outputs: OutputRegistry) -> QueryRunner:
    return PostgresRunner(
        config.runner,
        outputs,
        result_rows_limit=config.execution.result_rows_limit,
    )


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform/loop; KeyboardInterrupt still applies
            pass


async def run(
    config: RunConfig,
    *,
    runner_factory: Optional[RunnerFactory] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> int:
    """
    Run a validated configuration to completion.

    Returns:
        Process exit code: 0 on success, 1 when any failure was surfaced.
    """
    runner_factory = runner_factory or _default_runner
    stop_event = stop_event or asyncio.Event()
    daemon = config.runner.monitoring_enabled or config.runner.gateway_enabled

    with OutputRegistry() as outputs:
        runner = runner_factory(config, outputs)
        scheduler = ExecutionScheduler(
            config,
            runner,
            result_stream=outputs.open(config.runner.result_output),
            stop_event=stop_event,
        )
        try:
            scheduler.validate()
        except ConfigurationError as e:
            logger.error("%s", e)
            return 1

        monitor = RunMonitor(runner=runner, session=scheduler.session)
        servers: list[EndpointServer] = []
        if config.runner.monitoring_port is not None:
            servers.append(EndpointServer("Monitoring", create_monitoring_app(monitor), config.runner.monitoring_port))
        if config.runner.gateway_port is not None:
            servers.append(EndpointServer("Gateway", create_gateway_app(monitor), config.runner.gateway_port))

        try:
            for server in servers:
                await server.start()

            logger.info("Initialization of runner finished, executing queries...")
            outcome = await scheduler.run()

            errors = outcome.errors()
            for error in errors:
                logger.error("%s", error)
            if outcome.job_failures:
                logger.warning(
                    "%d query failure(s) recorded with continue-after-fail", len(outcome.job_failures)
                )

            if daemon:
                logger.info("Initialization finished, serving endpoints until stopped")
                await stop_event.wait()
        finally:
            for server in servers:
                await server.stop()
            await runner.close()

        logger.info("Finalization of runner finished")
        return 1 if errors else 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_file)

    try:
        config = load_run_config(args)
    except ConfigurationError as e:
        logger.error("%s", e)
        return 1

    async def _main() -> int:
        stop_event = asyncio.Event()
        _install_stop_handlers(stop_event)
        return await run(config, stop_event=stop_event)

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        print("[qrun] interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
