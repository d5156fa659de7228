import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from errors import StorageError
from models import (
    ACTIVITY_TYPES,
    ActivityEntry,
    AssociationKind,
    BulkChangeDetail,
    CreateBackup,
    Mapping,
    Restore,
    SetBulk,
    SetSingle,
    Snapshot,
    empty_mapping,
)
from utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

APP_NAME = "HandlerWatch"
ENV_DATA_DIR = "HANDLERWATCH_DATA_DIR"
CONFIG_FILENAME = "handlerwatch_config.json"
CONFIG_KEY = "data_dir"
CONFIG_KEYS = ("data_dir", "backup_dir", "log_level")
SNAPSHOT_FILE = "snapshot.json"
ACTIVITY_FILE = "activity_log.json"
BACKUP_DIRNAME = "backups"
ACTIVITY_FORMAT_VERSION = 1


def app_data_dir(app_name: str = APP_NAME) -> str:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
    else:
        base = os.getenv("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    if not base:
        base = os.path.expanduser("~")
    return os.path.join(base, app_name)


def _config_path() -> str:
    return os.path.join(app_data_dir(), CONFIG_FILENAME)


def load_config() -> Dict[str, str]:
    path = _config_path()
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        return {}
    config: Dict[str, str] = {}
    for key, value in payload.items():
        if key not in CONFIG_KEYS:
            continue
        if isinstance(value, str) and value.strip():
            config[key] = value.strip()
    return config


def update_config(values: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Merge settings into the config file. A blank value removes the key."""
    config = load_config()
    for key, value in values.items():
        if key not in CONFIG_KEYS or value is None:
            continue
        value = value.strip()
        if value:
            config[key] = value
        else:
            config.pop(key, None)
    _write_json(_config_path(), config)
    return config


def resolve_data_dir(override: Optional[str] = None) -> str:
    if override:
        return override
    env_value = os.getenv(ENV_DATA_DIR)
    if env_value:
        return env_value
    data_dir = load_config().get(CONFIG_KEY, "")
    return data_dir or app_data_dir()


def resolve_backup_dir(data_dir: str) -> str:
    return load_config().get("backup_dir") or os.path.join(data_dir, BACKUP_DIRNAME)


def _read_json(path: str) -> Any:
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable file %s: %s", path, exc)
        return None


def _write_json(path: str, payload: Any) -> None:
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
    except OSError as exc:
        logger.warning("Could not write %s: %s", path, exc)
        raise StorageError(path, str(exc)) from exc


def parse_handler_map(raw) -> Dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    pruned: Dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            continue
        if not isinstance(value, str) or not value.strip():
            continue
        pruned[key.strip()] = value.strip()
    return pruned


class SnapshotStore:
    """The single "last known good" mapping used as the drift baseline."""

    def __init__(self, path: str, clock: Callable = utc_now) -> None:
        self.path = path
        self._clock = clock
        self._cached: Optional[Snapshot] = None
        self._cache_valid = False

    def load(self) -> Optional[Snapshot]:
        if self._cache_valid:
            return self._cached
        payload = _read_json(self.path)
        snapshot = None
        if isinstance(payload, dict):
            timestamp = parse_timestamp(payload.get("timestamp"))
            if timestamp is not None:
                mapping = empty_mapping()
                mapping[AssociationKind.FILE_TYPE] = parse_handler_map(payload.get("file_types"))
                mapping[AssociationKind.URL_SCHEME] = parse_handler_map(payload.get("url_schemes"))
                snapshot = Snapshot(timestamp=timestamp, mapping=mapping)
        self._cached = snapshot
        self._cache_valid = True
        return snapshot

    def save(self, mapping: Mapping) -> Snapshot:
        snapshot = Snapshot(
            timestamp=self._clock(),
            mapping={kind: dict(mapping.get(kind, {})) for kind in AssociationKind},
        )
        _write_json(self.path, snapshot.to_dict())
        self._cached = snapshot
        self._cache_valid = True
        logger.debug("Saved snapshot with %d handlers", sum(len(items) for items in snapshot.mapping.values()))
        return snapshot


def _optional_str(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _parse_kind(value) -> Optional[AssociationKind]:
    try:
        return AssociationKind(value)
    except ValueError:
        return None


def _parse_detail(raw) -> Optional[BulkChangeDetail]:
    if not isinstance(raw, dict):
        return None
    kind = _parse_kind(raw.get("kind", AssociationKind.FILE_TYPE.value))
    identifier = raw.get("identifier")
    if kind is None or not isinstance(identifier, str) or not identifier:
        return None
    return BulkChangeDetail(
        kind=kind,
        identifier=identifier,
        old_handler_id=_optional_str(raw.get("old_handler_id")),
        old_handler_name=_optional_str(raw.get("old_handler_name")),
        new_handler_id=_optional_str(raw.get("new_handler_id")),
    )


def parse_activity_entry(raw) -> Optional[ActivityEntry]:
    if not isinstance(raw, dict):
        return None
    entry_id = raw.get("id")
    timestamp = parse_timestamp(raw.get("timestamp"))
    action = ACTIVITY_TYPES.get(raw.get("action"))
    if not isinstance(entry_id, str) or not entry_id or timestamp is None or action is None:
        return None
    target = raw.get("target") if isinstance(raw.get("target"), str) else ""
    if action is SetSingle:
        kind = _parse_kind(raw.get("kind"))
        if kind is None or not target:
            return None
        return SetSingle(
            entry_id=entry_id,
            timestamp=timestamp,
            kind=kind,
            identifier=target,
            old_handler_id=_optional_str(raw.get("old_handler_id")),
            old_handler_name=_optional_str(raw.get("old_handler_name")),
            new_handler_id=_optional_str(raw.get("new_handler_id")),
            new_handler_name=_optional_str(raw.get("new_handler_name")),
        )
    if action is SetBulk:
        details = raw.get("details")
        parsed = [_parse_detail(item) for item in details] if isinstance(details, list) else []
        return SetBulk(
            entry_id=entry_id,
            timestamp=timestamp,
            details=tuple(item for item in parsed if item is not None),
            new_handler_id=_optional_str(raw.get("new_handler_id")),
            new_handler_name=_optional_str(raw.get("new_handler_name")),
        )
    if action is CreateBackup:
        return CreateBackup(entry_id=entry_id, timestamp=timestamp, filename=target)
    restored = raw.get("restored")
    failed = raw.get("failed")
    return Restore(
        entry_id=entry_id,
        timestamp=timestamp,
        source=target,
        restored=restored if isinstance(restored, int) and not isinstance(restored, bool) else 0,
        failed=failed if isinstance(failed, int) and not isinstance(failed, bool) else 0,
    )


def load_activity(path: str) -> Tuple[List[ActivityEntry], Set[str]]:
    """Entries newest first plus the ids of entries invalidated by drift."""
    payload = _read_json(path)
    if isinstance(payload, list):
        raw_entries, raw_stale = payload, []
    elif isinstance(payload, dict):
        raw_entries = payload.get("entries", [])
        raw_stale = payload.get("invalidated", [])
    else:
        return [], set()
    entries: List[ActivityEntry] = []
    if isinstance(raw_entries, list):
        for item in raw_entries:
            entry = parse_activity_entry(item)
            if entry is not None:
                entries.append(entry)
    entries.sort(key=lambda entry: entry.timestamp, reverse=True)
    known = {entry.entry_id for entry in entries}
    stale: Set[str] = set()
    if isinstance(raw_stale, list):
        stale = {value for value in raw_stale if isinstance(value, str) and value in known}
    return entries, stale


def save_activity(path: str, entries: List[ActivityEntry], invalidated: Set[str]) -> None:
    payload = {
        "version": ACTIVITY_FORMAT_VERSION,
        "entries": [entry.to_dict() for entry in entries],
        "invalidated": sorted(invalidated),
    }
    _write_json(path, payload)


def clear_activity_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
        raise StorageError(path, str(exc)) from exc
