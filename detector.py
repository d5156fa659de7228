import logging
from typing import List

from activity import ActivityLog
from catalog import AssociationCatalog
from compare import substitutions
from errors import HandlerWatchError
from models import ExternalChange
from store import SnapshotStore

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Finds handler substitutions made by someone other than this tool.

    Detection runs once per session. Re-diffing against a baseline the user
    already reviewed would resurface changes they dismissed.
    """

    def __init__(self, catalog: AssociationCatalog, snapshots: SnapshotStore, activity: ActivityLog) -> None:
        self.catalog = catalog
        self.snapshots = snapshots
        self.activity = activity
        self.has_run = False

    def detect(self) -> List[ExternalChange]:
        if self.has_run:
            return []
        try:
            changes = self._detect()
        except (HandlerWatchError, OSError, ValueError) as exc:
            logger.warning("External change detection failed: %s", exc)
            return []
        self.has_run = True
        return changes

    def _detect(self) -> List[ExternalChange]:
        current = self.catalog.current_mapping()
        snapshot = self.snapshots.load()
        if snapshot is None:
            logger.debug("No baseline snapshot; recording the current state")
            self.snapshots.save(current)
            return []
        changes: List[ExternalChange] = []
        for (kind, identifier), old, new in substitutions(snapshot.mapping, current):
            if self.activity.was_applied(kind, identifier, new, snapshot.timestamp):
                logger.debug("Skipping %s: changed by us", kind.display(identifier))
                continue
            changes.append(ExternalChange(
                kind=kind,
                identifier=identifier,
                old_handler_id=old,
                old_handler_name=self.catalog.handler_name(old),
                new_handler_id=new,
                new_handler_name=self.catalog.handler_name(new),
            ))
        if changes:
            logger.info("Detected %d external handler changes since %s", len(changes), snapshot.timestamp)
        self.snapshots.save(current)
        return changes
