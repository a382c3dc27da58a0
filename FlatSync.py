#!/usr/bin/env python3
"""
FlatSync - reconcile media metadata from several file servers into
flat canonical records.

Usage:
    python FlatSync.py sync [--config flatsync.json] [--snapshot ID=path ...] [--server ID ...]
    python FlatSync.py verify [--no-compare] [--output report.json]
    python FlatSync.py cache-stats
    python FlatSync.py cache-clear

Defaults for --config, --log-level and --log-json come from FLATSYNC_*
environment variables.
"""

import argparse
import json
import os
import signal
import sys
import threading
from typing import Optional

from shared.log import configure_logging, create_logger
from validation.config import CliSettings, FlatSyncConfig, validate_config

log_trace, log_debug, log_info, log_warn, log_error = create_logger()


def load_config(path: str) -> tuple[Optional[FlatSyncConfig], Optional[str]]:
    """Read and validate a JSON config file."""
    if not os.path.exists(path):
        return None, f"Config file not found: {path}"
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        return None, f"Could not read {path}: {e}"
    if not isinstance(raw, dict):
        return None, f"{path} must contain a JSON object"
    return validate_config(raw)


def build_cache(config: FlatSyncConfig):
    if not config.cache_enabled:
        return None
    from fetch.cache import ResponseCache
    return ResponseCache(config.data_dir, default_ttl=config.cache_ttl, size_limit=config.cache_size_limit)


def build_fetch_client(config: FlatSyncConfig, cache=None):
    from fetch.client import FetchClient, RetryPolicy

    def on_event(event, url, details):
        log_trace(f"fetch {event} {url} {details}")

    return FetchClient(
        cache=cache,
        timeout=config.metadata_timeout,
        retry_policy=RetryPolicy(
            limit=config.retry_limit,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        ),
        on_event=on_event,
        hash_ttl=config.hash_cache_ttl,
        default_ttl=config.cache_ttl,
    )


def build_store(config: FlatSyncConfig):
    from store.sqlite import SQLiteRecordStore
    return SQLiteRecordStore(config.data_dir)


def parse_snapshot_args(values: Optional[list[str]]) -> dict[str, str]:
    """Turn ["a=/tmp/a.json", ...] into {"a": "/tmp/a.json"}."""
    paths = {}
    for value in values or []:
        server_id, sep, path = value.partition('=')
        if not sep or not server_id or not path:
            raise ValueError(f"--snapshot expects ID=PATH, got {value!r}")
        paths[server_id] = path
    return paths


def load_snapshots(config: FlatSyncConfig, client, snapshot_paths: dict[str, str]):
    """
    Load one snapshot per active server: from a file when given, else fetched.

    A server whose snapshot can't be loaded is left out; its run then
    aborts with a single top-level error.

    Returns:
        Tuple of (snapshots, errors)
    """
    from fetch.exceptions import FetchError
    from snapshot.ingest import fetch_server_snapshot, load_snapshot_file

    snapshots, errors = [], []
    for server in config.active_servers:
        try:
            if server.id in snapshot_paths:
                snapshots.append(load_snapshot_file(server.id, snapshot_paths[server.id]))
            else:
                snapshots.append(fetch_server_snapshot(server, client, timeout=config.bulk_timeout))
        except (FetchError, OSError, ValueError) as e:
            errors.append(f"{server.id}: {e}")
            log_error(f"Could not load snapshot for {server.id}: {e}")
    return snapshots, errors


def cmd_sync(args, config: FlatSyncConfig) -> int:
    from sync.history import SyncHistoryLog
    from sync.orchestrator import SyncOrchestrator

    try:
        snapshot_paths = parse_snapshot_args(args.snapshot)
    except ValueError as e:
        log_error(str(e))
        return 2

    servers = config.active_servers
    if args.server:
        unknown = set(args.server) - {s.id for s in servers}
        if unknown:
            log_error(f"Unknown or disabled server(s): {sorted(unknown)}")
            return 2

    cache = build_cache(config)
    client = build_fetch_client(config, cache)
    store = build_store(config)
    history = SyncHistoryLog(config.data_dir, max_entries=config.history_limit)

    cancel = threading.Event()
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())

    try:
        snapshots, load_errors = load_snapshots(config, client, snapshot_paths)
        orchestrator = SyncOrchestrator(store, client, config=config, history=history)
        results = orchestrator.run_all(snapshots, concurrent=args.concurrent, cancel_event=cancel)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        client.close()
        store.close()
        if cache is not None:
            cache.close()

    # Only report the servers asked for; the index still used every snapshot
    if args.server:
        results = [r for r in results if r.server_id in args.server]

    summary = [
        {
            'server': r.server_id,
            'state': r.state.value,
            'cancelled': r.cancelled,
            'titles': len(r.titles),
            'updatedTitles': len(r.updated_titles),
            'fieldUpdates': r.field_updates,
            'created': r.bootstrap.total_inserted if r.bootstrap else 0,
            'errors': r.errors,
        }
        for r in results
    ]
    print(json.dumps({'runs': summary, 'loadErrors': load_errors}, indent=2))

    failed = load_errors or any(r.errors for r in results)
    return 1 if failed else 0


def cmd_verify(args, config: FlatSyncConfig) -> int:
    from reconciliation.engine import VerificationEngine
    from sync.history import SyncHistoryLog

    store = build_store(config)
    history = SyncHistoryLog(config.data_dir, max_entries=config.history_limit)
    snapshots = []
    client = None
    cache = None

    try:
        if args.compare:
            cache = build_cache(config)
            client = build_fetch_client(config, cache)
            snapshots, _ = load_snapshots(config, client, parse_snapshot_args(args.snapshot))
        report = VerificationEngine(store, history).run(
            snapshots, server_ids=[s.id for s in config.active_servers]
        )
    finally:
        store.close()
        if client is not None:
            client.close()
        if cache is not None:
            cache.close()

    output = json.dumps(report.to_dict(), indent=2, default=str)
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(output)
        log_info(f"Verification report written to {args.output}")
    else:
        print(output)
    return 0


def cmd_cache_stats(args, config: FlatSyncConfig) -> int:
    from fetch.cache import ResponseCache

    cache = ResponseCache(config.data_dir, default_ttl=config.cache_ttl, size_limit=config.cache_size_limit)
    try:
        print(json.dumps(cache.get_stats(), indent=2))
    finally:
        cache.close()
    return 0


def cmd_cache_clear(args, config: FlatSyncConfig) -> int:
    from fetch.cache import ResponseCache

    cache = ResponseCache(config.data_dir, default_ttl=config.cache_ttl, size_limit=config.cache_size_limit)
    try:
        cache.clear()
    finally:
        cache.close()
    log_info(f"Cleared response cache in {config.data_dir}")
    return 0


COMMANDS = {
    'sync': cmd_sync,
    'verify': cmd_verify,
    'cache-stats': cmd_cache_stats,
    'cache-clear': cmd_cache_clear,
}


def build_parser(settings: Optional[CliSettings] = None) -> argparse.ArgumentParser:
    settings = settings or CliSettings()

    parser = argparse.ArgumentParser(description='Reconcile media metadata from file servers')
    parser.add_argument('--config', '-c', default=settings.config_file,
                        help='Path to JSON config (or set FLATSYNC_CONFIG_FILE)')
    parser.add_argument('--log-level', default=settings.log_level,
                        choices=['trace', 'debug', 'info', 'warning', 'error'],
                        help='Log level (or set FLATSYNC_LOG_LEVEL)')
    parser.add_argument('--log-json', action='store_true', default=settings.log_json,
                        help='Emit JSON log lines (or set FLATSYNC_LOG_JSON)')

    sub = parser.add_subparsers(dest='command', required=True)

    sync_parser = sub.add_parser('sync', help='Run a sync for every enabled server')
    sync_parser.add_argument('--snapshot', action='append', metavar='ID=PATH',
                             help='Load a server snapshot from a file instead of fetching it')
    sync_parser.add_argument('--server', action='append', metavar='ID',
                             help='Only report these servers')
    sync_parser.add_argument('--concurrent', action='store_true',
                             help='Run servers concurrently instead of in priority order')

    verify_parser = sub.add_parser('verify', help='Audit the canonical store')
    verify_parser.add_argument('--no-compare', dest='compare', action='store_false',
                               help='Skip comparing against server snapshots')
    verify_parser.add_argument('--snapshot', action='append', metavar='ID=PATH',
                               help='Compare against a snapshot file instead of fetching it')
    verify_parser.add_argument('--output', '-o', help='Write the JSON report to a file')

    sub.add_parser('cache-stats', help='Show response cache statistics')
    sub.add_parser('cache-clear', help='Empty the response cache')

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level, json_output=args.log_json)

    config, error = load_config(args.config)
    if error:
        log_error(f"Invalid configuration: {error}")
        return 2

    if config.debug_logging and args.log_level not in ('trace', 'debug'):
        configure_logging('trace', json_output=args.log_json)
    config.log_config()

    return COMMANDS[args.command](args, config)


if __name__ == '__main__':
    sys.exit(main())
