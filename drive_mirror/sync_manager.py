"""Reconciliation orchestrator: scan, diff, transfer, clean up, persist."""

from __future__ import annotations

import enum
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, Optional, Set

from .concurrency import WorkerPool
from .config import Config
from .content import mime_hint, remote_name
from .diff import Decision, DiffEngine, RecoveryAction, Verdict
from .drive_client import DriveFile
from .errors import (AuthExpiredError, DriveMirrorError, NotFoundError, RootResolutionError,
                     SecurityScopeViolation, SyncInProgressError)
from .manifest import ManifestStore
from .paths import ListingCache, PathResolver, find_root, resolve_root
from .scanner import LocalTree, PathFilter
from .state import LocalIndexEntry, LocalState, ManifestEntry, RemoteManifest, now_ms
from .transfer import TransferEngine

log = logging.getLogger(__name__)


def setup_logging(config: Config) -> None:
    d = os.path.dirname(config.log_file)
    if d and not os.path.exists(d):
        os.makedirs(d)
    if config.log_json:
        class _JsonFormatter(logging.Formatter):
            def format(self, record: logging.LogRecord) -> str:
                data = {
                    "ts": int(record.created * 1000),
                    "level": record.levelname,
                    "msg": record.getMessage(),
                    "name": record.name,
                }
                return json.dumps(data, sort_keys=True)
        fmt: logging.Formatter = _JsonFormatter()
    else:
        fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    fh = RotatingFileHandler(config.log_file, maxBytes=2 * 1024 * 1024, backupCount=2)
    fh.setFormatter(fmt)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.handlers = []
    root.addHandler(fh)
    root.addHandler(sh)


class SyncStatus(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    DIFFING = "diffing"
    TRANSFERRING = "transferring"
    CLEANING = "cleaning"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class ItemFailure:
    path: str
    error: str


@dataclass
class StatusReport:
    message: str
    can_cancel: bool = False


@dataclass
class SyncReport:
    status: SyncStatus
    total: int = 0
    processed: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    failures: List[ItemFailure] = field(default_factory=list)
    elapsed: float = 0.0
    error: Optional[str] = None

    @property
    def synced(self) -> int:
        return sum(self.counts.get(k, 0) for k in ("uploaded", "updated", "reused"))


class SyncSession:
    """Per-run state; built when a run starts and dropped when it ends."""

    def __init__(self) -> None:
        self.status = SyncStatus.INITIALIZING
        self.cancel_event = threading.Event()
        self.processed = 0
        self.total = 0
        self.root_id: Optional[str] = None
        self.resolver: Optional[PathResolver] = None
        self.listings: Optional[ListingCache] = None
        self.store: Optional[ManifestStore] = None
        self.manifest: Optional[RemoteManifest] = None
        self.kept: Set[str] = set()
        self.failures: List[ItemFailure] = []
        self.counts: Dict[str, int] = {k: 0 for k in ("uploaded", "updated", "reused", "skipped", "deleted", "failed")}
        self.bytes_uploaded = 0
        self.abort_error: Optional[BaseException] = None
        self.lock = threading.Lock()  # guards manifest, local index and counters across workers
        self.since_checkpoint = 0
        self.last_checkpoint = time.monotonic()
        self.started = time.monotonic()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class SyncManager:
    def __init__(self, config: Config, client, state: Optional[LocalState] = None,
                 notify: Optional[Callable[[str], None]] = None, transfer: Optional[TransferEngine] = None):
        self.config = config
        self.client = client
        self.transfer = transfer or TransferEngine(
            client,
            resumable_threshold=config.resumable_threshold,
            session_restarts=config.session_restarts,
            max_parent_depth=config.max_parent_depth,
        )
        self.state = state if state is not None else LocalState.load(config.state_file)
        self.notify = notify or (lambda message: log.info(message))
        self.diff = DiffEngine()
        self.filter = PathFilter.from_config(config, self.state.excluded_folders)
        self.stop_event = threading.Event()
        self._session: Optional[SyncSession] = None
        self._session_lock = threading.Lock()
        self._status = StatusReport("Ready")
        self._decision_level = logging.INFO if config.verbose_decisions else logging.DEBUG
        self._metrics = {
            "uploaded": 0,
            "updated": 0,
            "reused": 0,
            "skipped": 0,
            "deleted": 0,
            "failed": 0,
            "bytes_uploaded": 0,
            "runs_ok": 0,
            "runs_failed": 0,
            "runs_cancelled": 0,
        }
        self._metrics_lock = threading.Lock()

    # --- host surface ---
    @property
    def is_running(self) -> bool:
        return self._session is not None

    @property
    def session_status(self) -> SyncStatus:
        session = self._session
        return session.status if session is not None else SyncStatus.IDLE

    def status(self) -> StatusReport:
        return self._status

    def metrics(self) -> Dict[str, int]:
        with self._metrics_lock:
            return dict(self._metrics)

    def cancel(self) -> bool:
        session = self._session
        if session is None:
            return False
        session.cancel_event.set()
        self._set_status("Cancelling...")
        self.notify("Cancellation requested...")
        return True

    def sync(self) -> SyncReport:
        """Run one reconciliation; raises SyncInProgressError if one is already live."""
        session = self._begin()
        try:
            return self._run(session)
        finally:
            self._end()

    def force_resync(self) -> SyncReport:
        """Trash the remote root, forget all cached state, then sync from scratch."""
        session = self._begin()
        try:
            self._set_status("Deleting remote folder...")
            try:
                root_id = find_root(self.client, self.config.remote_root_path)
                if root_id:
                    self.transfer.delete(root_id, root_id)
                    self.notify("Remote folder moved to trash.")
            except DriveMirrorError as e:
                log.error(f"Force resync failed: {e}")
                self.notify("Force resync failed.")
                session.status = SyncStatus.FAILED
                return self._finish(session)
            self.state.clear()
            self.state.save()
            log.info("Local index and remote manifest cleared")
            return self._run(session)
        finally:
            self._end()

    def _begin(self) -> SyncSession:
        with self._session_lock:
            if self._session is not None:
                self.notify("Sync already in progress.")
                raise SyncInProgressError("A sync run is already in progress")
            self._session = SyncSession()
            return self._session

    def _end(self) -> None:
        with self._session_lock:
            self._session = None

    def _set_status(self, message: str, can_cancel: bool = False) -> None:
        self._status = StatusReport(message, can_cancel)
        log.debug(f"STATUS {message}")

    # --- run ---
    def _run(self, session: SyncSession) -> SyncReport:
        self.notify("Starting synchronization...")
        self._set_status("Starting...", can_cancel=True)
        pending: List[Decision] = []
        try:
            self._initialize(session)
            if not session.cancelled:
                pending = self._diff_phase(session)
            if not session.cancelled:
                self._transfer_phase(session, pending)
            if session.abort_error is not None:
                raise session.abort_error
            if not session.cancelled:
                self._clean_phase(session)
            session.status = SyncStatus.CANCELLED if session.cancelled else SyncStatus.DONE
        except Exception as e:
            session.status = SyncStatus.FAILED
            log.error(f"Sync failed: {e}", exc_info=not isinstance(e, DriveMirrorError))
            self.notify(f"Sync failed: {e}")
        self._persist(session, final=True)
        return self._finish(session)

    def _initialize(self, session: SyncSession) -> None:
        session.status = SyncStatus.INITIALIZING
        try:
            root_id = resolve_root(self.client, self.config.remote_root_path)
        except AuthExpiredError:
            raise
        except DriveMirrorError as e:
            raise RootResolutionError(f"Cannot resolve remote root {self.config.remote_root_path!r}: {e}") from e
        session.root_id = root_id
        previous = self.state.remote_folder_id
        if previous and previous != root_id:
            log.warning(f"Remote root changed ({previous} -> {root_id}); dropping {len(self.state.sync_index)} cached index entries")
            with session.lock:
                self.state.sync_index.clear()
        self.state.remote_folder_id = root_id
        session.resolver = PathResolver(self.client, root_id)
        session.store = ManifestStore(self.client, self.transfer)
        session.manifest = session.store.load(root_id) or RemoteManifest.empty()
        session.listings = ListingCache(self.client, claimed=(e.drive_id for e in session.manifest.files.values()))
        log.info(f"Remote root {self.config.remote_root_path} ({root_id}); manifest holds {len(session.manifest.files)} file(s)")

    def _diff_phase(self, session: SyncSession) -> List[Decision]:
        session.status = SyncStatus.DIFFING
        self._set_status("Scanning local files...", can_cancel=True)
        tree = LocalTree(self.config.local_directory, self.filter,
                         skip_files=(self.config.state_file, self.config.log_file))
        records = tree.scan()
        session.total = len(records)
        manifest = session.manifest
        index = self.state.sync_index
        pending: List[Decision] = []
        for i, record in enumerate(records, 1):
            if i % self.config.yield_every == 0:
                time.sleep(0)  # let transfer/host threads run during long scans
            if session.cancelled:
                break
            session.kept.add(record.path)
            try:
                decision = self.diff.classify(record, index.get(record.path), manifest.files.get(record.path))
            except Exception as e:
                self._item_failed(session, record.path, e)
                continue
            log.log(self._decision_level, f"DIFF {decision.verdict.value} rel={record.path} size={record.size}")
            if decision.verdict is Verdict.SKIP:
                self._mark_unchanged(session, decision)
            else:
                decision.release()  # re-read at transfer time to bound memory
                pending.append(decision)
        log.info(f"Diff complete: {len(pending)} to transfer, {session.counts['skipped']} unchanged")
        return pending

    def _mark_unchanged(self, session: SyncSession, decision: Decision) -> None:
        record = decision.record
        entry = session.manifest.files[record.path]
        self.state.sync_index[record.path] = LocalIndexEntry(record.path, entry.drive_id, decision.hash, record.mtime)
        session.counts["skipped"] += 1
        session.processed += 1

    def _transfer_phase(self, session: SyncSession, pending: List[Decision]) -> None:
        session.status = SyncStatus.TRANSFERRING
        self._progress(session)
        pool = WorkerPool(self.config.max_concurrency, should_stop=session.cancel_event.is_set)
        tasks = [(d.record.path, partial(self._transfer_one, session, d)) for d in pending]
        for result in pool.run(tasks):
            if result.skipped:
                continue
            session.processed += 1
            if result.ok:
                with session.lock:
                    session.counts[result.value] += 1
            elif isinstance(result.error, AuthExpiredError):
                session.abort_error = result.error
                session.cancel_event.set()  # stop scheduling; the run fails once in-flight work drains
            else:
                self._item_failed(session, result.key, result.error)
            self._progress(session)
            self._maybe_checkpoint(session)
        log.debug(f"Transfers drained; {session.resolver.known_folders} remote folder(s) resolved")

    def _transfer_one(self, session: SyncSession, decision: Decision) -> str:
        record = decision.record
        mime = mime_hint(record.path, self.config.convert_documents)
        content = decision.load_content()
        with session.lock:
            entry = session.manifest.files.get(record.path)
        remote: Optional[DriveFile] = None
        action = "updated"
        if decision.verdict is Verdict.UPLOAD_MODIFIED and entry is not None:
            try:
                remote = self.transfer.update(entry.drive_id, content, mime)
            except NotFoundError:
                log.info(f"Remote object for {record.path} vanished; recreating")
        if remote is None:
            name = remote_name(record.path, mime)
            parent_id = session.resolver.resolve(record.parent)
            recovery = self.diff.smart_recover(decision, session.listings.claim(parent_id, name, mime))
            log.log(self._decision_level, f"RECOVERY {recovery.action.value} rel={record.path}")
            if recovery.action is RecoveryAction.REUSE:
                remote, action = recovery.remote, "reused"
            elif recovery.action is RecoveryAction.OVERWRITE:
                remote = self.transfer.update(recovery.remote.id, content, mime)
            else:
                remote, action = self.transfer.create(name, content, mime, parent_id), "uploaded"
        size = len(content.to_wire()) if action != "reused" else 0
        decision.release()
        with session.lock:
            session.manifest.files[record.path] = ManifestEntry(
                record.path, remote.id, decision.hash, remote.modified_time or now_ms())
            self.state.sync_index[record.path] = LocalIndexEntry(record.path, remote.id, decision.hash, record.mtime)
            session.bytes_uploaded += size
        log.log(self._decision_level, f"TRANSFER {action} rel={record.path} id={remote.id}")
        return action

    def _clean_phase(self, session: SyncSession) -> None:
        session.status = SyncStatus.CLEANING
        self._set_status("Removing remote orphans...", can_cancel=True)
        manifest = session.manifest
        orphans = sorted(p for p in manifest.files if p not in session.kept and not self.filter.is_excluded(p))
        for rel in orphans:
            if session.cancelled:
                return
            entry = manifest.files[rel]
            try:
                self.transfer.delete(entry.drive_id, session.root_id)
            except NotFoundError:
                log.info(f"Orphan {rel} already gone remotely")
            except SecurityScopeViolation as e:
                log.error(f"Refusing to delete {rel}: {e}")
                self._item_failed(session, rel, e)
                continue
            except AuthExpiredError:
                raise
            except Exception as e:
                self._item_failed(session, rel, e)
                continue
            log.log(self._decision_level, f"DELETE orphan rel={rel} id={entry.drive_id}")
            with session.lock:
                manifest.files.pop(rel, None)
                self.state.sync_index.pop(rel, None)
                session.counts["deleted"] += 1
        for rel in list(self.state.sync_index):
            if rel not in session.kept and rel not in manifest.files and not self.filter.is_excluded(rel):
                del self.state.sync_index[rel]

    # --- bookkeeping ---
    def _item_failed(self, session: SyncSession, rel: str, error: BaseException) -> None:
        log.warning(f"Failed to sync {rel}: {error}")
        with session.lock:
            session.failures.append(ItemFailure(rel, str(error)))
            session.counts["failed"] += 1
        self.notify(f"Failed to sync {rel}")

    def _progress(self, session: SyncSession) -> None:
        if session.cancelled:
            return
        total = session.total or 1
        percent = round(session.processed * 100 / total)
        self._set_status(f"Syncing: {session.processed}/{session.total} ({percent}%)", can_cancel=True)

    def _maybe_checkpoint(self, session: SyncSession) -> None:
        session.since_checkpoint += 1
        due = (session.since_checkpoint >= self.config.checkpoint_every
               or time.monotonic() - session.last_checkpoint >= self.config.checkpoint_seconds)
        if due:
            self._persist(session)

    def _persist(self, session: SyncSession, final: bool = False) -> None:
        """Flush manifest and local index; errors are logged, never raised."""
        session.since_checkpoint = 0
        session.last_checkpoint = time.monotonic()
        with session.lock:
            manifest = session.manifest.copy() if session.manifest is not None else None
            snapshot = self.state.snapshot()
        try:
            self.state.write(snapshot)
        except OSError as e:
            log.error(f"State save failed: {e}")
        if manifest is None or session.root_id is None or session.store is None:
            return
        if final:
            manifest.last_sync = now_ms()
        try:
            session.store.save(session.root_id, manifest)
            log.debug(f"{'Final save' if final else 'Checkpoint'}: {len(manifest.files)} manifest entries")
        except DriveMirrorError as e:
            log.error(f"Manifest save failed: {e}")

    def _finish(self, session: SyncSession) -> SyncReport:
        report = SyncReport(
            status=session.status,
            total=session.total,
            processed=session.processed,
            counts=dict(session.counts),
            failures=list(session.failures),
            elapsed=time.monotonic() - session.started,
            error=str(session.abort_error) if session.abort_error else None,
        )
        with self._metrics_lock:
            for k, v in report.counts.items():
                self._metrics[k] += v
            self._metrics["bytes_uploaded"] += session.bytes_uploaded
            key = {SyncStatus.DONE: "runs_ok", SyncStatus.CANCELLED: "runs_cancelled"}.get(report.status, "runs_failed")
            self._metrics[key] += 1
        if report.status is SyncStatus.DONE:
            self.notify(f"Synchronization complete: {report.synced} synced, {len(report.failures)} failed.")
            self._set_status("Ready")
        elif report.status is SyncStatus.CANCELLED:
            self.notify(f"Synchronization cancelled after {report.processed}/{report.total} file(s).")
            self._set_status("Cancelled")
        else:
            self._set_status("Sync failed")
        if self.config.progress_summary:
            c = report.counts
            log.info(
                f"RUN {report.status.value.upper()} elapsed={report.elapsed:.2f}s uploaded={c['uploaded']} "
                f"updated={c['updated']} reused={c['reused']} skipped={c['skipped']} deleted={c['deleted']} "
                f"failed={c['failed']} up_bytes={session.bytes_uploaded}"
            )
        return report

    # --- triggers ---
    def wait_for_marker(self) -> bool:
        """Wait (bounded) while another sync tool's marker file exists; proceed anyway on timeout."""
        marker = self.config.startup_wait_marker
        if not marker:
            return True
        deadline = time.monotonic() + self.config.startup_wait_timeout
        while os.path.exists(marker) and time.monotonic() < deadline:
            if self.stop_event.wait(self.config.startup_poll_interval):
                return False
        if os.path.exists(marker):
            log.warning(f"{marker} still present after {self.config.startup_wait_timeout}s; proceeding anyway")
            return False
        return True

    def run_once(self) -> bool:
        try:
            report = self.sync()
        except SyncInProgressError:
            return True
        return report.status is not SyncStatus.FAILED

    def start(self) -> None:
        """Startup trigger, then the periodic trigger until stop_event is set."""
        interval = self.config.sync_interval
        try:
            if self.config.sync_on_startup:
                self.wait_for_marker()
                if not self.stop_event.is_set():
                    self.run_once()
            if interval <= 0:
                return
            backoff = interval
            while not self.stop_event.wait(backoff):
                ok = self.run_once()
                backoff = interval if ok else min(backoff * 2, interval * 12)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.stop_event.set()
        self.cancel()
        log.info("Shutdown complete")
