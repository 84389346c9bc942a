"""Configuration loader for drive-mirror.

Reads environment variables (with optional .env support) and exposes a typed
Config object used by the rest of the application.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

MIB = 1024 * 1024


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    value = value.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _parse_int(name: str, value: Optional[str], default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Invalid {name}: {value}") from e


def _parse_float(name: str, value: Optional[str], default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"Invalid {name}: {value}") from e


def _parse_size(name: str, value: Optional[str], default: int) -> int:
    """Parse a byte count, accepting K/M/G suffixes (binary units)."""
    if value is None or value.strip() == "":
        return default
    raw = value.strip().upper().rstrip("B")
    factor = 1
    if raw and raw[-1] in "KMG":
        factor = {"K": 1024, "M": MIB, "G": 1024 * MIB}[raw[-1]]
        raw = raw[:-1]
    try:
        return int(float(raw) * factor)
    except ValueError as e:
        raise ValueError(f"Invalid {name}: {value}") from e


def _parse_patterns(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return tuple()
    parts = [p.strip() for p in value.split(",")]
    return tuple(p for p in parts if p)


def _parse_folders(value: Optional[str]) -> Tuple[str, ...]:
    return tuple(p.strip("/") for p in _parse_patterns(value) if p.strip("/"))


@dataclass
class Config:
    # Credentials / auth
    client_id: str = ""
    client_secret: str = ""
    refresh_token: Optional[str] = None
    use_keyring: bool = False
    keyring_service: str = "drive-mirror"
    keyring_username: str = "refresh-token"

    # Paths / files
    local_directory: str = os.path.expanduser("~/Documents/Vault")
    remote_folder_path: str = ""
    state_file: str = os.path.expanduser("~/.config/drive-mirror/state.json")
    log_file: str = os.path.expanduser("~/drive-mirror.log")

    # Triggers
    sync_interval: int = 900  # 0 disables the periodic trigger
    sync_on_startup: bool = True
    startup_wait_marker: str = ""  # file whose presence means another sync is busy
    startup_wait_timeout: int = 60
    startup_poll_interval: int = 2

    # Filtering
    include_patterns: Tuple[str, ...] = tuple()
    exclude_patterns: Tuple[str, ...] = tuple()
    ignore_patterns: Tuple[str, ...] = tuple()  # always ignored (takes precedence over include)
    excluded_folders: Tuple[str, ...] = tuple()
    convert_documents: bool = True

    # Transfer / pacing
    max_concurrency: int = 3
    resumable_threshold: int = 5 * MIB
    max_retries: int = 3
    retry_base_delay: float = 1.0
    session_restarts: int = 3
    checkpoint_every: int = 20
    checkpoint_seconds: int = 30
    yield_every: int = 50
    max_parent_depth: int = 20

    # Logging
    log_level: str = "INFO"
    verbose_decisions: bool = False
    log_json: bool = False
    progress_summary: bool = False

    @property
    def remote_root_path(self) -> str:
        """Remote root folder path; defaults to the local directory's name."""
        path = self.remote_folder_path.strip("/")
        return path or os.path.basename(os.path.normpath(self.local_directory))

    @staticmethod
    def load() -> "Config":
        # Load .env if present
        load_dotenv()

        # Credentials
        client_id = os.getenv("GOOGLE_CLIENT_ID", "")
        client_secret = os.getenv("GOOGLE_CLIENT_SECRET", "")
        refresh_token = os.getenv("GOOGLE_REFRESH_TOKEN") or None
        use_keyring = _parse_bool(os.getenv("USE_KEYRING"), False)
        keyring_service = os.getenv("KEYRING_SERVICE", "drive-mirror")

        # Paths
        local_dir = os.path.expanduser(os.getenv("LOCAL_DIRECTORY", "~/Documents/Vault"))
        remote_folder_path = os.getenv("REMOTE_FOLDER_PATH", "").strip()
        state_file = os.path.expanduser(os.getenv("STATE_FILE", "~/.config/drive-mirror/state.json"))
        log_file = os.path.expanduser(os.getenv("LOG_FILE", "~/drive-mirror.log"))

        # Triggers
        sync_interval = _parse_int("SYNC_INTERVAL", os.getenv("SYNC_INTERVAL"), 900)
        if 0 < sync_interval < 60:
            sync_interval = 60
        if sync_interval < 0:
            sync_interval = 0
        sync_on_startup = _parse_bool(os.getenv("SYNC_ON_STARTUP"), True)
        startup_wait_marker = os.path.expanduser(os.getenv("STARTUP_WAIT_MARKER", ""))
        startup_wait_timeout = max(0, _parse_int("STARTUP_WAIT_TIMEOUT", os.getenv("STARTUP_WAIT_TIMEOUT"), 60))
        startup_poll_interval = max(1, _parse_int("STARTUP_POLL_INTERVAL", os.getenv("STARTUP_POLL_INTERVAL"), 2))

        # Filtering
        include_patterns = _parse_patterns(os.getenv("INCLUDE_PATTERNS"))
        exclude_patterns = _parse_patterns(os.getenv("EXCLUDE_PATTERNS"))
        ignore_patterns = _parse_patterns(os.getenv("IGNORE_PATTERNS"))
        excluded_folders = _parse_folders(os.getenv("EXCLUDED_FOLDERS"))
        convert_documents = _parse_bool(os.getenv("CONVERT_DOCUMENTS"), True)

        # Transfer / pacing
        max_concurrency = max(1, _parse_int("MAX_CONCURRENCY", os.getenv("MAX_CONCURRENCY"), 3))
        resumable_threshold = _parse_size("RESUMABLE_THRESHOLD", os.getenv("RESUMABLE_THRESHOLD"), 5 * MIB)
        if resumable_threshold < 0:
            resumable_threshold = 0
        max_retries = max(1, _parse_int("MAX_RETRIES", os.getenv("MAX_RETRIES"), 3))
        retry_base_delay = max(0.0, _parse_float("RETRY_BASE_DELAY", os.getenv("RETRY_BASE_DELAY"), 1.0))
        session_restarts = max(1, _parse_int("SESSION_RESTARTS", os.getenv("SESSION_RESTARTS"), 3))
        checkpoint_every = max(1, _parse_int("CHECKPOINT_EVERY", os.getenv("CHECKPOINT_EVERY"), 20))
        checkpoint_seconds = max(1, _parse_int("CHECKPOINT_SECONDS", os.getenv("CHECKPOINT_SECONDS"), 30))
        yield_every = max(1, _parse_int("YIELD_EVERY", os.getenv("YIELD_EVERY"), 50))
        max_parent_depth = max(1, _parse_int("MAX_PARENT_DEPTH", os.getenv("MAX_PARENT_DEPTH"), 20))

        # Logging
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        verbose_decisions = _parse_bool(os.getenv("VERBOSE_DECISIONS"), False)
        log_json = _parse_bool(os.getenv("LOG_JSON"), False)
        progress_summary = _parse_bool(os.getenv("PROGRESS_SUMMARY"), False)

        return Config(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
            use_keyring=use_keyring,
            keyring_service=keyring_service,
            local_directory=local_dir,
            remote_folder_path=remote_folder_path,
            state_file=state_file,
            log_file=log_file,
            sync_interval=sync_interval,
            sync_on_startup=sync_on_startup,
            startup_wait_marker=startup_wait_marker,
            startup_wait_timeout=startup_wait_timeout,
            startup_poll_interval=startup_poll_interval,
            include_patterns=include_patterns,
            exclude_patterns=exclude_patterns,
            ignore_patterns=ignore_patterns,
            excluded_folders=excluded_folders,
            convert_documents=convert_documents,
            max_concurrency=max_concurrency,
            resumable_threshold=resumable_threshold,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
            session_restarts=session_restarts,
            checkpoint_every=checkpoint_every,
            checkpoint_seconds=checkpoint_seconds,
            yield_every=yield_every,
            max_parent_depth=max_parent_depth,
            log_level=log_level,
            verbose_decisions=verbose_decisions,
            log_json=log_json,
            progress_summary=progress_summary,
        )
