import csv
import datetime as _dt
import json
import logging
import os
from typing import Callable, List, Optional

from compare import restore_diff
from errors import BackupError, HandlerWatchError, RegistryRejection
from models import Association, AssociationKind, BackupInfo, BackupRecord, DiffEntry, Mapping, RestoreResult
from store import parse_handler_map
from utils import backup_timestamp, parse_timestamp, utc_now

try:
    from openpyxl import Workbook
except ImportError:  # pragma: no cover - optional dependency
    Workbook = None

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = 1

CSV_HEADERS = [
    "Kind",
    "Identifier",
    "Description",
    "HandlerId",
    "HandlerName",
    "AvailableHandlers",
]


def backup_from_mapping(mapping: Mapping, os_version: str, created_at: Optional[_dt.datetime] = None) -> BackupRecord:
    return BackupRecord(
        created_at=created_at or utc_now(),
        os_version=os_version,
        file_types=dict(mapping.get(AssociationKind.FILE_TYPE, {})),
        url_schemes=dict(mapping.get(AssociationKind.URL_SCHEME, {})),
        version=BACKUP_FORMAT_VERSION,
    )


def save_backup(file_path: str, record: BackupRecord) -> None:
    directory = os.path.dirname(file_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(file_path, "w", encoding="utf-8") as fh:
        json.dump(record.to_dict(), fh, indent=2, sort_keys=True)


def load_backup(file_path: str) -> BackupRecord:
    try:
        with open(file_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise BackupError(f"Invalid backup file {file_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise BackupError(f"Invalid backup file {file_path}: expected an object")
    created_at = parse_timestamp(data.get("created_at"))
    if created_at is None:
        raise BackupError(f"Invalid backup file {file_path}: missing created_at")
    version = data.get("version", BACKUP_FORMAT_VERSION)
    if not isinstance(version, int) or isinstance(version, bool) or version > BACKUP_FORMAT_VERSION:
        raise BackupError(f"Unsupported backup version in {file_path}: {version!r}")
    return BackupRecord(
        created_at=created_at,
        os_version=str(data.get("os_version") or ""),
        file_types=parse_handler_map(data.get("file_types")),
        url_schemes=parse_handler_map(data.get("url_schemes")),
        version=version,
    )


def preview_restore(candidate: BackupRecord, current_handler: Callable) -> List[DiffEntry]:
    """Changes restoring ``candidate`` would make; reads only."""
    return restore_diff(candidate.mapping(), current_handler)


def apply_restore(candidate: BackupRecord, current_handler: Callable, set_handler: Callable) -> RestoreResult:
    """Set every differing identifier; failures are collected, not rolled back."""
    result = RestoreResult()
    for change in preview_restore(candidate, current_handler):
        key = (change.kind, change.identifier)
        try:
            set_handler(change.kind, change.identifier, change.proposed_handler)
        except RegistryRejection as exc:
            result.failed[key] = exc.reason
            continue
        except HandlerWatchError as exc:
            result.failed[key] = str(exc)
            continue
        result.succeeded.append(key)
    return result


class BackupManager:
    """Backup files in a single directory, named ``backup-<timestamp>.json``."""

    def __init__(self, directory: str, clock: Callable[[], _dt.datetime] = utc_now) -> None:
        self.directory = directory
        self._clock = clock

    def _next_path(self, created_at: _dt.datetime) -> str:
        stem = f"backup-{backup_timestamp(created_at)}"
        path = os.path.join(self.directory, f"{stem}.json")
        counter = 1
        while os.path.exists(path):
            path = os.path.join(self.directory, f"{stem}-{counter}.json")
            counter += 1
        return path

    def create(self, mapping: Mapping, os_version: str, path: Optional[str] = None) -> str:
        record = backup_from_mapping(mapping, os_version, self._clock())
        target = path or self._next_path(record.created_at)
        try:
            save_backup(target, record)
        except OSError as exc:
            raise BackupError(f"Could not write backup {target}: {exc}") from exc
        logger.info("Created backup %s", target)
        return target

    def list_backups(self) -> List[BackupInfo]:
        if not os.path.isdir(self.directory):
            return []
        infos: List[BackupInfo] = []
        for name in os.listdir(self.directory):
            if name.startswith(".") or not name.endswith(".json"):
                continue
            path = os.path.join(self.directory, name)
            try:
                record = load_backup(path)
                size = os.path.getsize(path)
            except (BackupError, OSError) as exc:
                logger.debug("Skipping %s: %s", path, exc)
                continue
            infos.append(BackupInfo(
                path=path,
                created_at=record.created_at,
                os_version=record.os_version,
                file_types_count=len(record.file_types),
                schemes_count=len(record.url_schemes),
                file_size=size,
            ))
        return sorted(infos, key=lambda info: info.created_at, reverse=True)

    def latest(self) -> Optional[BackupInfo]:
        backups = self.list_backups()
        return backups[0] if backups else None

    def delete(self, path: str) -> None:
        try:
            os.remove(path)
        except OSError as exc:
            raise BackupError(f"Could not delete backup {path}: {exc}") from exc

    def delete_all(self) -> int:
        backups = self.list_backups()
        for info in backups:
            self.delete(info.path)
        return len(backups)


def _row_for(assoc: Association, handler_name: Callable[[Optional[str]], str]) -> List[str]:
    return [
        assoc.kind.value,
        assoc.identifier,
        assoc.description,
        assoc.current_handler or "",
        handler_name(assoc.current_handler) if assoc.current_handler else "",
        "; ".join(assoc.available_handlers),
    ]


def export_csv(file_path: str, associations: List[Association], handler_name: Callable[[Optional[str]], str]) -> None:
    with open(file_path, "w", newline="", encoding="utf-8") as csv_file:
        writer = csv.writer(csv_file)
        writer.writerow(CSV_HEADERS)
        for assoc in associations:
            writer.writerow(_row_for(assoc, handler_name))


def export_xlsx(file_path: str, associations: List[Association], handler_name: Callable[[Optional[str]], str]) -> None:
    if Workbook is None:
        raise RuntimeError("openpyxl is required for XLSX export. Install it with: pip install openpyxl")
    book = Workbook(write_only=True)
    sheets = {
        AssociationKind.FILE_TYPE: book.create_sheet("File Types"),
        AssociationKind.URL_SCHEME: book.create_sheet("URL Schemes"),
    }
    for sheet in sheets.values():
        sheet.append(CSV_HEADERS)
    for assoc in associations:
        sheets[assoc.kind].append(_row_for(assoc, handler_name))
    book.save(file_path)
