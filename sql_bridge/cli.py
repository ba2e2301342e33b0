"""Diagnostic command line for a worker install.

Connects, runs each SQL statement, prints one JSON document per result on
stdout and disconnects. Logs go to stderr.

Usage:
    sql-bridge --host db1 --port 5000 --database prod --username sa \\
        --password secret "select 1" "select getdate()"

    # Statements from stdin, one per line
    echo "select 1" | sql-bridge --worker-path ./JavaSybaseLink.jar

Unset options fall back to SQL_BRIDGE_* environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Iterable, List, Optional, TextIO

from sql_bridge.client import SqlBridge
from sql_bridge.ipc.protocol import BridgeError
from sql_bridge.logging import configure_logging
from sql_bridge.settings import BridgeSettings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sql-bridge",
        description="Run SQL through a line-JSON database worker process.",
    )
    parser.add_argument("sql", nargs="*", help="SQL to run (default: read lines from stdin)")

    db = parser.add_argument_group("database")
    db.add_argument("--host")
    db.add_argument("--port", type=int)
    db.add_argument("--database")
    db.add_argument("--username")
    db.add_argument("--password")

    worker = parser.add_argument_group("worker")
    worker.add_argument("--java-path", help="Java executable (default: java)")
    worker.add_argument("--worker-path", help="Path to the worker jar")
    worker.add_argument("--encoding", help="Worker output encoding (default: utf-8)")
    worker.add_argument("--connect-timeout", type=float, help="Seconds to wait for the handshake")
    worker.add_argument("--timeout", type=float, help="Seconds to wait for each query")

    log = parser.add_argument_group("logging")
    log.add_argument("--log-timing", action="store_true", default=None,
                     help="Log per-query timing")
    log.add_argument("--logs", action="store_true", default=None,
                     help="Log every request and response")
    log.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    log.add_argument("--console-logs", action="store_true",
                     help="Human readable logs instead of JSON")
    return parser


_SETTINGS_ARGS = (
    "host", "port", "database", "username", "password", "java_path",
    "worker_path", "encoding", "connect_timeout", "log_timing", "logs", "log_level",
)


def settings_from_args(args: argparse.Namespace) -> BridgeSettings:
    """Build settings from the options that were actually given."""
    overrides: Dict[str, Any] = {
        name: getattr(args, name)
        for name in _SETTINGS_ARGS
        if getattr(args, name) is not None
    }
    if args.console_logs:
        overrides["json_logs"] = False
    return BridgeSettings(**overrides)


def iter_statements(sql: List[str], stdin: TextIO) -> Iterable[str]:
    if sql:
        yield from sql
        return
    for line in stdin:
        line = line.strip()
        if line:
            yield line


async def run(
    settings: BridgeSettings,
    statements: Iterable[str],
    *,
    timeout: Optional[float] = None,
    out: TextIO = sys.stdout,
    bridge: Optional[SqlBridge] = None,
) -> int:
    """Run statements one after another; returns the process exit code."""
    bridge = bridge or SqlBridge(settings)
    exit_code = 0
    try:
        await bridge.connect_async()
    except BridgeError as e:
        print(f"connect failed: {e}", file=sys.stderr)
        return 1

    try:
        for sql in statements:
            try:
                result = await bridge.query_async(sql, timeout=timeout)
            except BridgeError as e:
                print(f"query failed: {e}", file=sys.stderr)
                exit_code = 1
                if not bridge.is_connected():
                    break
                continue
            out.write(json.dumps(result, default=str) + "\n")
            out.flush()
    finally:
        await bridge.disconnect()
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValueError as e:
        print(f"invalid settings: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level, json_output=settings.json_logs)
    return asyncio.run(
        run(settings, iter_statements(args.sql, sys.stdin), timeout=args.timeout)
    )


if __name__ == "__main__":
    sys.exit(main())
