import argparse
import json
import logging
import os
import signal
import sys
import time

from . import __version__
from .config import Config
from .errors import AuthExpiredError, SyncInProgressError


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Mirror a local document tree onto Google Drive")
    parser.add_argument("--once", action="store_true", help="Run one reconciliation then exit")
    parser.add_argument("--interval", type=int, help="Override sync interval seconds (0 disables periodic sync)")
    parser.add_argument("--include", help="Comma-separated glob patterns to include (overrides env INCLUDE_PATTERNS)")
    parser.add_argument("--exclude", help="Comma-separated glob patterns to exclude (overrides env EXCLUDE_PATTERNS)")
    parser.add_argument("--concurrency", type=int, help="Maximum simultaneous transfers")
    parser.add_argument("--force-resync", action="store_true", help="Trash the remote folder, clear caches and upload everything again")
    parser.add_argument("--verbose-decisions", action="store_true", help="Log per-file decision details at INFO level")
    parser.add_argument("--progress-summary", action="store_true", help="Log a summary line after each run")
    parser.add_argument("--status", action="store_true", help="Print current local state summary (no sync) and exit")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    return parser.parse_args(argv)


def state_summary(config: Config) -> dict:
    state_path = config.state_file
    if not os.path.exists(state_path):
        return {'files_tracked': 0, 'state_file': state_path, 'missing': True}
    try:
        with open(state_path, 'r', encoding='utf-8') as f:
            st = json.load(f)
    except (OSError, ValueError) as e:
        return {'error': f'Failed to read state file: {e}', 'state_file': state_path}
    files = st.get('sync_index', st.get('syncIndex', {}))
    return {
        'files_tracked': len(files),
        'excluded_folders': st.get('excluded_folders', []),
        'remote_folder_id': st.get('remote_folder_id'),
        'state_file': state_path,
        'sample_files': sorted(files)[:10],
        'generated_at': int(time.time()),
    }


def main(argv=None):
    args = parse_args(argv)
    if args.version:
        print(f"drive-mirror {__version__}")
        return 0
    config = Config.load()
    if args.status:
        print(json.dumps(state_summary(config), indent=2, sort_keys=True))
        return 0

    if args.interval is not None:
        config.sync_interval = 0 if args.interval <= 0 else max(60, args.interval)
    if args.include:
        config.include_patterns = tuple(p.strip() for p in args.include.split(',') if p.strip())
    if args.exclude:
        config.exclude_patterns = tuple(p.strip() for p in args.exclude.split(',') if p.strip())
    if args.concurrency is not None:
        config.max_concurrency = max(1, args.concurrency)
    if args.verbose_decisions:
        config.verbose_decisions = True
    if args.progress_summary:
        config.progress_summary = True

    # Lazy import to keep --version / --status free of network dependencies
    from .auth import build_token_provider  # noqa: PLC0415
    from .drive_client import DriveClient  # noqa: PLC0415
    from .sync_manager import SyncManager, SyncStatus, setup_logging  # noqa: PLC0415

    setup_logging(config)
    try:
        token_provider = build_token_provider(config)
    except AuthExpiredError as e:
        logging.error(f"{e}. Set GOOGLE_REFRESH_TOKEN (or store it in the keyring with USE_KEYRING=1).")
        return 2

    with DriveClient(token_provider, max_retries=config.max_retries, base_delay=config.retry_base_delay) as client:
        manager = SyncManager(config, client)

        def handle_sigterm(signum, frame):  # pragma: no cover - signal path
            manager.stop_event.set()
            manager.cancel()
        signal.signal(signal.SIGTERM, handle_sigterm)
        signal.signal(signal.SIGINT, handle_sigterm)

        if args.force_resync:
            try:
                report = manager.force_resync()
            except SyncInProgressError:
                return 1
            return 0 if report.status is not SyncStatus.FAILED else 1
        if args.once:
            report = manager.sync()
            return 0 if report.status is not SyncStatus.FAILED else 1
        manager.start()
    return 0


if __name__ == '__main__':
    raise SystemExit(main(sys.argv[1:]))
