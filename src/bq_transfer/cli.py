"""CLI entrypoint for bq-transfer."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from bq_transfer.config import (
    TransferConfig,
    discover_config,
    load_config,
    resolve_credentials,
)
from bq_transfer.errors import BqTransferError, ParameterError


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the connection arguments shared by ``load`` and ``dump``."""
    parser.add_argument(
        "--project",
        type=str,
        default=None,
        help="GCP project ID (default: from config).",
    )
    parser.add_argument(
        "--credentials",
        type=str,
        default=None,
        help="Service-account JSON key file (default: from config).",
    )
    parser.add_argument(
        "--proxy",
        type=str,
        default=None,
        help="HTTP proxy URL for API requests (default: from config).",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to bq_transfer.toml (default: auto-discover from CWD).",
    )


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with ``load`` and ``dump`` subcommands."""
    parser = argparse.ArgumentParser(
        prog="bq-transfer",
        description="Load files into BigQuery and dump query results to files.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- load ---
    load_parser = subparsers.add_parser(
        "load",
        help="Upload a .json (newline-delimited) or .csv file into a table.",
    )
    _add_common_arguments(load_parser)
    load_parser.add_argument(
        "--dataset",
        type=str,
        required=True,
        help="Target dataset (created if missing).",
    )
    load_parser.add_argument(
        "--table",
        type=str,
        required=True,
        help="Target table.",
    )
    load_parser.add_argument(
        "--schema",
        type=str,
        required=True,
        help="JSON schema descriptor file.",
    )
    load_parser.add_argument(
        "--source",
        type=str,
        required=True,
        help="Source data file (.json or .csv).",
    )
    load_parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between job status checks (default: 3).",
    )
    load_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up waiting for the job after this many seconds.",
    )

    # --- dump ---
    dump_parser = subparsers.add_parser(
        "dump",
        help="Run a query and write all result rows as JSON or CSV.",
    )
    _add_common_arguments(dump_parser)
    dump_parser.add_argument(
        "query",
        type=str,
        help="Standard SQL query, or @path to read it from a file.",
    )
    dump_parser.add_argument(
        "-o",
        "--output",
        type=str,
        required=True,
        help="Output file path.",
    )
    dump_parser.add_argument(
        "-f",
        "--format",
        type=str,
        default="json",
        help="Output format: json or csv (default: json).",
    )
    dump_parser.add_argument(
        "-d",
        "--delimiter",
        type=str,
        default="",
        help="CSV delimiter; 'tab' for a tab character (default: ',').",
    )
    dump_parser.add_argument(
        "--pretty",
        action="store_true",
        help="Indent JSON output.",
    )
    dump_parser.add_argument(
        "--header",
        action="store_true",
        help="Write column names as the first CSV line.",
    )
    dump_parser.add_argument(
        "--timeout-ms",
        type=int,
        default=0,
        help="Server-side query timeout in milliseconds.",
    )
    dump_parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Do not use cached query results.",
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint.

    Args:
        argv: Command-line arguments.  Defaults to ``sys.argv[1:]``.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )

    try:
        if args.command == "load":
            _handle_load(args)

        if args.command == "dump":
            _handle_dump(args)
    except (BqTransferError, OSError) as exc:
        logging.error("%s", exc)
        sys.exit(1)


def _resolve_config(
    args: argparse.Namespace,
) -> tuple[Path | None, TransferConfig | None]:
    """Discover and load config from CLI args.

    An explicit ``--config`` must exist; an auto-discovered one is
    optional.

    Args:
        args: Parsed CLI namespace (must have a ``config`` attribute).

    Returns:
        Tuple of (config_path, TransferConfig), both ``None`` when no
        config file was found.
    """
    if args.config:
        config_path = Path(args.config).resolve()
    else:
        try:
            config_path = discover_config()
        except FileNotFoundError:
            logging.debug("No config file found, using CLI arguments only")
            return None, None

    return config_path, load_config(config_path)


def _connection(
    args: argparse.Namespace,
) -> tuple[str, str, str | None, TransferConfig | None]:
    """Merge connection settings from CLI args and the config file.

    Returns:
        Tuple of (project, credentials, proxy, config).
    """
    config_path, config = _resolve_config(args)

    project = args.project
    credentials = args.credentials
    proxy = args.proxy
    if config is not None and config_path is not None:
        project = project or config.project.id
        if not credentials:
            resolved = resolve_credentials(config, config_path)
            credentials = str(resolved) if resolved else None
        proxy = proxy or config.proxy

    return project or "", credentials or "", proxy, config


def _handle_load(args: argparse.Namespace) -> None:
    """Handle the ``load`` subcommand."""
    from bq_transfer.config import DEFAULT_POLL_INTERVAL
    from bq_transfer.load import load_table

    project, credentials, proxy, config = _connection(args)

    # CLI flags win over the config file.
    poll_interval = DEFAULT_POLL_INTERVAL
    timeout = None
    if config is not None:
        poll_interval = config.poll_interval
        timeout = config.timeout
    if args.poll_interval is not None:
        poll_interval = args.poll_interval
    if args.timeout is not None:
        timeout = args.timeout

    job_id = load_table(
        project,
        args.dataset,
        args.table,
        credentials,
        args.schema,
        args.source,
        proxy,
        poll_interval=poll_interval,
        timeout=timeout,
    )
    logging.info(
        "Loaded %s into %s.%s.%s (job %s)",
        args.source,
        project,
        args.dataset,
        args.table,
        job_id,
    )


def _handle_dump(args: argparse.Namespace) -> None:
    """Handle the ``dump`` subcommand."""
    from bq_transfer.dump import dump_query

    project, credentials, proxy, _ = _connection(args)

    query: str = args.query
    if query.startswith("@"):
        query_path = Path(query[1:])
        try:
            query = query_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ParameterError(
                f"Query file {query_path} is not UTF-8 - {exc}"
            ) from exc

    dump_query(
        project,
        credentials,
        args.output,
        args.format,
        args.delimiter,
        query,
        proxy,
        pretty=args.pretty,
        print_header=args.header,
        timeout_ms=args.timeout_ms,
        no_cache=args.no_cache,
    )
