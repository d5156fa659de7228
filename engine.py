import datetime as _dt
import logging
import os
import queue
import threading
from typing import Callable, Iterable, List, Optional, Set, Tuple, Union

import backups
from activity import ActivityLog, consolidate, group_by_period, plan_bulk_undo, plan_single_undo
from backups import BackupManager
from catalog import AssociationCatalog
from detector import ChangeDetector
from errors import HandlerUnavailable, NotUndoable, RegistryRejection, StateDrift
from models import (
    ActivityEntry,
    Association,
    AssociationKind,
    BackupInfo,
    BackupRecord,
    BatchResult,
    BulkChangeDetail,
    ConsolidatedUndo,
    CreateBackup,
    DiffEntry,
    ExternalChange,
    Restore,
    RestoreResult,
    SetBulk,
    SetSingle,
)
from registry import HandlerRegistry
from store import ACTIVITY_FILE, SNAPSHOT_FILE, SnapshotStore, resolve_backup_dir, resolve_data_dir
from toast import UndoToast
from updates import UpdateInfo, start_update_check
from utils import normalize_identifier, utc_now

logger = logging.getLogger(__name__)

BackupSource = Union[BackupRecord, str]


class AssociationEngine:
    """Owns the catalog, snapshot, activity log and external-change list.

    All public methods must be called from one thread. Work pushed to worker
    threads reports back through ``poll``, which applies results on the
    caller's thread.
    """

    POLL_TIMEOUT = 0.1

    def __init__(
        self,
        registry: HandlerRegistry,
        data_dir: Optional[str] = None,
        backup_dir: Optional[str] = None,
        extensions: Optional[Iterable[str]] = None,
        schemes: Optional[Iterable[str]] = None,
        clock: Callable[[], _dt.datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.clock = clock
        self.data_dir = resolve_data_dir(data_dir)
        self.catalog = AssociationCatalog(registry, extensions, schemes)
        self.snapshots = SnapshotStore(os.path.join(self.data_dir, SNAPSHOT_FILE), clock)
        self.activity = ActivityLog(os.path.join(self.data_dir, ACTIVITY_FILE), clock)
        self.activity.load()
        self.backups = BackupManager(backup_dir or resolve_backup_dir(self.data_dir), clock)
        self.detector = ChangeDetector(self.catalog, self.snapshots, self.activity)
        self.toast = UndoToast(clock)
        self.external_changes: List[ExternalChange] = []
        self.update_info: Optional[UpdateInfo] = None
        self.last_error: Optional[BaseException] = None
        self._bg_queue: queue.Queue = queue.Queue()
        self._load_job_id = 0
        self._pending_kinds: Set[AssociationKind] = set()

    # Loading

    def load_associations(self, kind: AssociationKind) -> List[Association]:
        if not self.catalog.is_loaded(kind):
            self.catalog.load(kind)
        return self.catalog.associations(kind)

    def _ensure_loaded(self) -> None:
        for kind in AssociationKind:
            if not self.catalog.is_loaded(kind):
                self.catalog.load(kind)

    def refresh(self) -> None:
        """Reload every association from the registry. Does not re-run detection."""
        self._cancel_pending_load()
        self.catalog.forget_handler_info()
        for kind in AssociationKind:
            self.catalog.load(kind)

    def _cancel_pending_load(self) -> None:
        # Results fetched before a write would roll the catalog back.
        self._load_job_id += 1
        self._pending_kinds.clear()

    @property
    def is_loading(self) -> bool:
        return bool(self._pending_kinds)

    def refresh_async(self) -> int:
        self._load_job_id += 1
        job_id = self._load_job_id
        self._pending_kinds = set(AssociationKind)
        thread = threading.Thread(target=self._load_worker, args=(job_id,), daemon=True)
        thread.start()
        return job_id

    def _load_worker(self, job_id: int) -> None:
        for kind in AssociationKind:
            try:
                associations = self.catalog.fetch(kind)
            except Exception as exc:  # pragma: no cover - reported on the owner thread
                self._bg_queue.put(("catalog_error", job_id, kind, exc))
                return
            self._bg_queue.put(("catalog_loaded", job_id, kind, associations))

    def check_for_updates(self, owner: str, repo: str, current_version: str) -> threading.Thread:
        return start_update_check(owner, repo, current_version, self._bg_queue)

    def poll(self, wait: bool = False) -> int:
        """Apply finished background work; returns the number of events handled."""
        handled = 0
        while True:
            try:
                if wait and self.is_loading:
                    event = self._bg_queue.get(timeout=self.POLL_TIMEOUT)
                else:
                    event = self._bg_queue.get_nowait()
            except queue.Empty:
                if wait and self.is_loading:
                    continue
                break
            self._handle_bg_event(event)
            handled += 1
        return handled

    def _handle_bg_event(self, event: Tuple) -> None:
        kind = event[0]
        if kind == "catalog_loaded":
            _kind, job_id, assoc_kind, associations = event
            if job_id != self._load_job_id:
                return
            self.catalog.apply(assoc_kind, associations)
            self._pending_kinds.discard(assoc_kind)
            if not self._pending_kinds and not self.detector.has_run:
                self.detect_external_changes()
            return
        if kind == "catalog_error":
            _kind, job_id, assoc_kind, exc = event
            if job_id != self._load_job_id:
                return
            self._pending_kinds.clear()
            self.last_error = exc
            logger.warning("Loading %s associations failed: %s", assoc_kind.value, exc)
            return
        if kind == "update_checked":
            _kind, info = event
            self.update_info = info
            return
        if kind == "update_error":
            _kind, exc = event
            logger.debug("Update check failed: %s", exc)
            return

    # Mutations

    def _ensure_baseline(self) -> None:
        # The snapshot is rewritten after every mutation; compare against it first.
        if not self.detector.has_run:
            self.detect_external_changes()

    def _save_snapshot(self) -> None:
        self._ensure_loaded()
        self.snapshots.save(self.catalog.current_mapping())

    def _association(self, kind: AssociationKind, identifier: str) -> Association:
        self._ensure_loaded()
        if self.catalog.get(kind, identifier) is None:
            self.catalog.track(kind, identifier)
            return self.catalog.refresh_one(kind, identifier)
        return self.catalog.require(kind, identifier)

    def _set(self, kind: AssociationKind, identifier: str, handler_id: str) -> Association:
        self._cancel_pending_load()
        try:
            self.registry.set_handler(kind, identifier, handler_id)
        except RegistryRejection as exc:
            logger.warning("Setting %s to %s was rejected: %s", kind.display(identifier), handler_id, exc.reason)
            raise
        return self.catalog.refresh_one(kind, identifier)

    def set_default(
        self,
        kind: AssociationKind,
        identifier: str,
        handler_id: str,
        skip_log: bool = False,
    ) -> Optional[SetSingle]:
        identifier = normalize_identifier(kind, identifier)
        self._ensure_baseline()
        before = self._association(kind, identifier)
        old_id = before.current_handler
        updated = self._set(kind, identifier, handler_id)
        logger.info("Set %s: %s -> %s", kind.display(identifier), old_id, updated.current_handler)
        entry = None
        if not skip_log:
            entry = SetSingle(
                entry_id=self.activity.new_id(),
                timestamp=self.clock(),
                kind=kind,
                identifier=identifier,
                old_handler_id=old_id,
                old_handler_name=self.catalog.handler_name(old_id) or None,
                new_handler_id=updated.current_handler or handler_id,
                new_handler_name=self.catalog.handler_name(updated.current_handler or handler_id) or None,
            )
            self.activity.append(entry)
            new_name = entry.new_handler_name or "Unknown"
            self.toast.show(
                f"Changed {kind.display(identifier)} to {new_name}",
                entry.entry_id if entry.can_undo else None,
            )
        self._save_snapshot()
        return entry

    def bulk_set_default(self, kind: AssociationKind, identifiers: Iterable[str], handler_id: str) -> BatchResult:
        self._ensure_baseline()
        result = BatchResult()
        details: List[BulkChangeDetail] = []
        for raw in identifiers:
            identifier = normalize_identifier(kind, raw)
            if not identifier:
                continue
            before = self._association(kind, identifier)
            key = (kind, identifier)
            try:
                self._set(kind, identifier, handler_id)
            except RegistryRejection as exc:
                result.failed[key] = exc.reason
                continue
            result.succeeded.append(key)
            details.append(BulkChangeDetail(
                kind=kind,
                identifier=identifier,
                old_handler_id=before.current_handler,
                old_handler_name=self.catalog.handler_name(before.current_handler) or None,
                new_handler_id=handler_id,
            ))
        if details:
            app_name = self.catalog.handler_name(handler_id)
            result.entry = self.activity.append(SetBulk(
                entry_id=self.activity.new_id(),
                timestamp=self.clock(),
                details=tuple(details),
                new_handler_id=handler_id,
                new_handler_name=app_name,
            ))
            logger.info("Bulk set %d %s to %s (%d failed)", len(details), kind.value, handler_id, len(result.failed))
            self.toast.show(f"Changed {result.entry.describe()}", result.entry.entry_id)
            self._save_snapshot()
        return result

    # External changes

    def detect_external_changes(self) -> List[ExternalChange]:
        if self.detector.has_run:
            return []
        self._ensure_loaded()
        changes = self.detector.detect()
        if self.detector.has_run:
            self.external_changes = list(changes)
        return changes

    def _forget_change(self, change: ExternalChange) -> None:
        self.external_changes = [item for item in self.external_changes if item.key() != change.key()]

    def revert_external_change(self, change: ExternalChange) -> Optional[SetSingle]:
        if not change.old_handler_id:
            raise NotUndoable(f"No previous handler recorded for {change.display_target()}")
        if not self.catalog.is_available(change.old_handler_id):
            raise HandlerUnavailable(change.old_handler_id, change.old_handler_name or "")
        entry = self.set_default(change.kind, change.identifier, change.old_handler_id)
        self._forget_change(change)
        self.toast.show(f"Reverted {change.display_target()}", entry.entry_id if entry else None)
        return entry

    def revert_all(self) -> BatchResult:
        result = BatchResult()
        details: List[BulkChangeDetail] = []
        for change in list(self.external_changes):
            key = change.key()
            if not change.old_handler_id:
                result.failed[key] = "No previous handler recorded"
                continue
            if not self.catalog.is_available(change.old_handler_id):
                result.failed[key] = str(HandlerUnavailable(change.old_handler_id, change.old_handler_name or ""))
                continue
            current = self._association(change.kind, change.identifier).current_handler
            try:
                self._set(change.kind, change.identifier, change.old_handler_id)
            except RegistryRejection as exc:
                result.failed[key] = exc.reason
                continue
            result.succeeded.append(key)
            details.append(BulkChangeDetail(
                kind=change.kind,
                identifier=change.identifier,
                old_handler_id=current,
                old_handler_name=self.catalog.handler_name(current) or None,
                new_handler_id=change.old_handler_id,
            ))
            self._forget_change(change)
        if details:
            result.entry = self.activity.append(SetBulk(
                entry_id=self.activity.new_id(),
                timestamp=self.clock(),
                details=tuple(details),
            ))
            self._save_snapshot()
            self.toast.show(f"Reverted {len(details)} external changes", result.entry.entry_id)
        return result

    def dismiss(self, change: ExternalChange) -> None:
        self._forget_change(change)
        self._save_snapshot()

    def dismiss_all(self) -> None:
        self.external_changes = []
        self._save_snapshot()

    # Activity

    def list_activity(self) -> List[ActivityEntry]:
        return self.activity.entries

    def activity_groups(self) -> List[Tuple[str, List[ActivityEntry]]]:
        return group_by_period(self.activity.entries, self.clock())

    def clear_activity(self) -> None:
        self.activity.clear()

    def _on_drift(self, entry: ActivityEntry, exc: StateDrift) -> None:
        logger.warning("Undo of %s refused: %s", entry.entry_id, exc)
        self.activity.invalidate(entry.entry_id)
        self.refresh()

    def undo(self, entry_id: str) -> BatchResult:
        entry = self.activity.find(entry_id)
        self._ensure_baseline()
        if self.activity.is_invalidated(entry_id):
            raise StateDrift(_drift_targets(entry), entry_id)
        self._ensure_loaded()
        if isinstance(entry, SetSingle):
            return self._undo_single(entry)
        if isinstance(entry, SetBulk):
            return self._undo_bulk(entry)
        raise NotUndoable(f"{entry.describe()} cannot be undone")

    def _undo_single(self, entry: SetSingle) -> BatchResult:
        self.catalog.track(entry.kind, entry.identifier)
        assoc = self.catalog.refresh_one(entry.kind, entry.identifier)
        try:
            handler_id, handler_name = plan_single_undo(entry, assoc, self.catalog.is_available)
        except StateDrift as exc:
            self._on_drift(entry, exc)
            raise
        self._set(entry.kind, entry.identifier, handler_id)
        reversal = self.activity.append(SetSingle(
            entry_id=self.activity.new_id(),
            timestamp=self.clock(),
            kind=entry.kind,
            identifier=entry.identifier,
            old_handler_id=entry.new_handler_id,
            old_handler_name=entry.new_handler_name,
            new_handler_id=handler_id,
            new_handler_name=handler_name,
        ))
        self._save_snapshot()
        logger.info("Undid %s", entry.describe())
        self.toast.show(f"Undone: {entry.kind.display(entry.identifier)}")
        return BatchResult(succeeded=[(entry.kind, entry.identifier)], entry=reversal)

    def _undo_bulk(self, entry: SetBulk) -> BatchResult:
        for detail in entry.details:
            self._association(detail.kind, detail.identifier)
            self.catalog.refresh_one(detail.kind, detail.identifier)
        try:
            details = plan_bulk_undo(entry, self.catalog.current_handler)
        except StateDrift as exc:
            self._on_drift(entry, exc)
            raise
        if not details:
            raise NotUndoable("Cannot undo: no previous handlers recorded")
        reverts = [
            ConsolidatedUndo(
                kind=detail.kind,
                identifier=detail.identifier,
                handler_id=detail.old_handler_id,
                handler_name=detail.old_handler_name or detail.old_handler_id,
            )
            for detail in details
        ]
        result = self._apply_reverts(reverts)
        if result.entry is not None:
            logger.info("Undid %s", entry.describe())
            self.toast.show(f"Undone: {entry.describe()}")
        return result

    def consolidated_undos(self, entry_ids: Iterable[str]) -> List[ConsolidatedUndo]:
        entries = [self.activity.find(entry_id) for entry_id in entry_ids]
        return consolidate(self.activity.undoable(entries))

    def undo_group(self, entry_ids: Iterable[str]) -> BatchResult:
        """Return every target touched by the entries to its state before the group."""
        reverts = self.consolidated_undos(entry_ids)
        if not reverts:
            raise NotUndoable("Nothing in this group can be undone")
        self._ensure_baseline()
        for revert in reverts:
            self._association(revert.kind, revert.identifier)
            self.catalog.refresh_one(revert.kind, revert.identifier)
        result = self._apply_reverts(reverts)
        self.toast.show(f"Restored {len(result.succeeded)} handlers")
        return result

    def _apply_reverts(self, reverts: List[ConsolidatedUndo]) -> BatchResult:
        result = BatchResult()
        details: List[BulkChangeDetail] = []
        for revert in reverts:
            key = (revert.kind, revert.identifier)
            if not self.catalog.is_available(revert.handler_id):
                result.failed[key] = str(HandlerUnavailable(revert.handler_id, revert.handler_name))
                continue
            current = self.catalog.current_handler(revert.kind, revert.identifier)
            try:
                self._set(revert.kind, revert.identifier, revert.handler_id)
            except RegistryRejection as exc:
                result.failed[key] = exc.reason
                continue
            result.succeeded.append(key)
            details.append(BulkChangeDetail(
                kind=revert.kind,
                identifier=revert.identifier,
                old_handler_id=current,
                old_handler_name=self.catalog.handler_name(current) or None,
                new_handler_id=revert.handler_id,
            ))
        if details:
            result.entry = self.activity.append(SetBulk(
                entry_id=self.activity.new_id(),
                timestamp=self.clock(),
                details=tuple(details),
            ))
            self._save_snapshot()
        return result

    def invoke_toast(self) -> Optional[BatchResult]:
        entry_id = self.toast.invoke()
        if entry_id is None:
            return None
        return self.undo(entry_id)

    # Backups

    def create_backup(self, path: Optional[str] = None) -> str:
        self._ensure_loaded()
        target = self.backups.create(self.catalog.current_mapping(), self.registry.os_version(), path)
        self.activity.append(CreateBackup(
            entry_id=self.activity.new_id(),
            timestamp=self.clock(),
            filename=os.path.basename(target),
        ))
        self.toast.show("Backup created")
        return target

    def list_backups(self) -> List[BackupInfo]:
        return self.backups.list_backups()

    def delete_backup(self, path: str) -> None:
        self.backups.delete(path)

    def delete_all_backups(self) -> int:
        return self.backups.delete_all()

    def latest_backup(self) -> Optional[BackupInfo]:
        return self.backups.latest()

    def load_backup(self, path: str) -> BackupRecord:
        return backups.load_backup(path)

    def _backup_record(self, backup: BackupSource) -> BackupRecord:
        if isinstance(backup, BackupRecord):
            return backup
        return backups.load_backup(backup)

    def _lookup_handler(self, kind: AssociationKind, identifier: str) -> Optional[str]:
        assoc = self.catalog.get(kind, identifier)
        if assoc is not None:
            return assoc.current_handler
        return self.registry.get_handler(kind, identifier)

    def preview_restore(self, backup: BackupSource) -> List[DiffEntry]:
        record = self._backup_record(backup)
        self._ensure_loaded()
        return backups.preview_restore(record, self._lookup_handler)

    def apply_restore(self, backup: BackupSource) -> RestoreResult:
        record = self._backup_record(backup)
        self._ensure_baseline()

        def set_handler(kind: AssociationKind, identifier: str, handler_id: str) -> None:
            self._association(kind, identifier)
            self._set(kind, identifier, handler_id)

        result = backups.apply_restore(record, self._lookup_handler, set_handler)
        source = os.path.basename(backup) if isinstance(backup, str) else record.created_at.strftime("%Y-%m-%d %H:%M")
        result.entry = self.activity.append(Restore(
            entry_id=self.activity.new_id(),
            timestamp=self.clock(),
            source=source,
            restored=len(result.succeeded),
            failed=len(result.failed),
        ))
        self._save_snapshot()
        logger.info("Restored %s from %s", result.summary(), source)
        self.toast.show(f"Restored {result.summary()}")
        return result


def _drift_targets(entry: ActivityEntry) -> List[str]:
    if isinstance(entry, SetSingle):
        return [entry.kind.display(entry.identifier)]
    if isinstance(entry, SetBulk):
        return [detail.kind.display(detail.identifier) for detail in entry.details]
    return [entry.target]
