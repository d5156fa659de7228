import datetime as _dt
import logging
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from errors import HandlerUnavailable, NotUndoable, StateDrift, StorageError, UnknownActivityEntry, UnknownAssociation
from models import (
    ActivityEntry,
    Association,
    AssociationKey,
    AssociationKind,
    BulkChangeDetail,
    ConsolidatedUndo,
    SetBulk,
    SetSingle,
)
from store import clear_activity_file, load_activity, save_activity
from utils import utc_now

logger = logging.getLogger(__name__)

PERIOD_ORDER = ("Today", "Yesterday", "This Week", "Earlier")


class ActivityLog:
    """Most-recent-first history of mutations made through the engine."""

    MAX_ENTRIES = 100
    MAX_AGE = _dt.timedelta(days=30)

    def __init__(self, path: Optional[str] = None, clock: Callable[[], _dt.datetime] = utc_now) -> None:
        self.path = path
        self._clock = clock
        self._entries: List[ActivityEntry] = []
        self._invalidated: Set[str] = set()

    def load(self) -> None:
        if self.path:
            self._entries, self._invalidated = load_activity(self.path)
        before = len(self._entries)
        self._prune()
        if len(self._entries) != before:
            logger.debug("Pruned %d expired activity entries", before - len(self._entries))
            try:
                self._persist()
            except StorageError as exc:
                # Pruning is retried on the next append.
                logger.warning("Could not rewrite pruned activity log: %s", exc)

    @property
    def entries(self) -> List[ActivityEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def append(self, entry: ActivityEntry) -> ActivityEntry:
        self._entries.insert(0, entry)
        self._prune()
        self._persist()
        return entry

    def find(self, entry_id: str) -> ActivityEntry:
        for entry in self._entries:
            if entry.entry_id == entry_id:
                return entry
        raise UnknownActivityEntry(entry_id)

    def clear(self) -> None:
        self._entries = []
        self._invalidated = set()
        if self.path:
            clear_activity_file(self.path)

    def invalidate(self, entry_id: str) -> None:
        if entry_id in self._invalidated:
            return
        self._invalidated.add(entry_id)
        self._persist()

    def is_invalidated(self, entry_id: str) -> bool:
        return entry_id in self._invalidated

    def is_undoable(self, entry: ActivityEntry) -> bool:
        return entry.can_undo and entry.entry_id not in self._invalidated

    def undoable(self, entries: Optional[Iterable[ActivityEntry]] = None) -> List[ActivityEntry]:
        source = self._entries if entries is None else entries
        return [entry for entry in source if self.is_undoable(entry)]

    def entries_since(self, since: _dt.datetime) -> List[ActivityEntry]:
        return [entry for entry in self._entries if entry.timestamp > since]

    def was_applied(self, kind: AssociationKind, identifier: str, handler_id: str, since: _dt.datetime) -> bool:
        for entry in self.entries_since(since):
            if entry.applied(kind, identifier, handler_id):
                return True
        return False

    def _prune(self) -> None:
        cutoff = self._clock() - self.MAX_AGE
        kept = [entry for entry in self._entries if entry.timestamp > cutoff]
        kept.sort(key=lambda entry: entry.timestamp, reverse=True)
        self._entries = kept[: self.MAX_ENTRIES]
        live = {entry.entry_id for entry in self._entries}
        self._invalidated &= live

    def _persist(self) -> None:
        if self.path:
            save_activity(self.path, self._entries, self._invalidated)


def plan_single_undo(
    entry: SetSingle,
    assoc: Optional[Association],
    is_available: Callable[[str], bool],
) -> Tuple[str, str]:
    """Return the handler id and name to restore for ``entry``.

    Handler ids are compared, never display names.
    """
    if not entry.can_undo or entry.old_handler_id is None:
        raise NotUndoable("Cannot undo: no previous handler")
    if assoc is None:
        raise UnknownAssociation(entry.kind, entry.identifier)
    if assoc.current_handler != entry.new_handler_id:
        raise StateDrift([entry.kind.display(entry.identifier)], entry.entry_id)
    if not is_available(entry.old_handler_id):
        raise HandlerUnavailable(entry.old_handler_id, entry.old_handler_name or "")
    return entry.old_handler_id, entry.old_handler_name or entry.old_handler_id


def plan_bulk_undo(
    entry: SetBulk,
    current_handler: Callable[[AssociationKind, str], Optional[str]],
) -> List[BulkChangeDetail]:
    """Details that can be reverted, after checking none already were.

    A detail whose identifier already holds its recorded old handler means
    the state moved since the entry was written. Two bulk entries touching
    the same identifier can trip this check too; that is reported as drift.
    """
    if not entry.details:
        raise NotUndoable("Cannot undo: no details available")
    drifted = [
        detail.kind.display(detail.identifier)
        for detail in entry.details
        if current_handler(detail.kind, detail.identifier) == detail.old_handler_id
    ]
    if drifted:
        raise StateDrift(drifted, entry.entry_id)
    return [detail for detail in entry.details if detail.old_handler_id]


def _reversions(entry: ActivityEntry) -> List[ConsolidatedUndo]:
    if isinstance(entry, SetSingle):
        if not entry.old_handler_id:
            return []
        return [ConsolidatedUndo(
            kind=entry.kind,
            identifier=entry.identifier,
            handler_id=entry.old_handler_id,
            handler_name=entry.old_handler_name or entry.old_handler_id,
        )]
    if isinstance(entry, SetBulk):
        return [
            ConsolidatedUndo(
                kind=detail.kind,
                identifier=detail.identifier,
                handler_id=detail.old_handler_id,
                handler_name=detail.old_handler_name or detail.old_handler_id,
            )
            for detail in entry.details
            if detail.old_handler_id
        ]
    return []


def consolidate(entries: Iterable[ActivityEntry]) -> List[ConsolidatedUndo]:
    """Minimal reversions that return every target to its pre-group state.

    For ``.cpp`` changed A -> B -> C only the revert to A is kept.
    """
    ordered = sorted((entry for entry in entries if entry.can_undo), key=lambda entry: entry.timestamp)
    seen: Set[AssociationKey] = set()
    result: List[ConsolidatedUndo] = []
    for entry in ordered:
        for undo in _reversions(entry):
            key = (undo.kind, undo.identifier)
            if key in seen:
                continue
            seen.add(key)
            result.append(undo)
    return result


def period_for(timestamp: _dt.datetime, now: _dt.datetime) -> str:
    local = timestamp.astimezone(now.tzinfo) if now.tzinfo else timestamp
    today = now.date()
    if local.date() == today:
        return "Today"
    if local.date() == today - _dt.timedelta(days=1):
        return "Yesterday"
    if (now - local).days < 7:
        return "This Week"
    return "Earlier"


def group_by_period(entries: Iterable[ActivityEntry], now: _dt.datetime) -> List[Tuple[str, List[ActivityEntry]]]:
    groups: Dict[str, List[ActivityEntry]] = {}
    for entry in entries:
        groups.setdefault(period_for(entry.timestamp, now), []).append(entry)
    return [(key, groups[key]) for key in PERIOD_ORDER if groups.get(key)]
