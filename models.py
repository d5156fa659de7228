from dataclasses import dataclass, field
import datetime as _dt
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple


class AssociationKind(str, Enum):
    FILE_TYPE = "file_type"
    URL_SCHEME = "url_scheme"

    def display(self, identifier: str) -> str:
        if self is AssociationKind.FILE_TYPE:
            return f".{identifier}"
        return f"{identifier}://"


AssociationKey = Tuple[AssociationKind, str]
Mapping = Dict[AssociationKind, Dict[str, str]]


def empty_mapping() -> Mapping:
    return {kind: {} for kind in AssociationKind}


def format_timestamp(value: _dt.datetime) -> str:
    return value.isoformat(timespec="microseconds")


@dataclass(frozen=True)
class HandlerInfo:
    handler_id: str
    name: str
    icon_ref: str = ""


@dataclass
class Association:
    kind: AssociationKind
    identifier: str
    current_handler: Optional[str] = None
    current_name: str = ""
    available_handlers: List[str] = field(default_factory=list)
    description: str = ""

    def key(self) -> AssociationKey:
        return (self.kind, self.identifier)

    def display_name(self) -> str:
        return self.kind.display(self.identifier)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "identifier": self.identifier,
            "current_handler": self.current_handler,
            "current_name": self.current_name,
            "available_handlers": list(self.available_handlers),
            "description": self.description,
        }


@dataclass(frozen=True)
class Snapshot:
    timestamp: _dt.datetime
    mapping: Mapping

    def handler_for(self, kind: AssociationKind, identifier: str) -> Optional[str]:
        return self.mapping.get(kind, {}).get(identifier)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "file_types": dict(self.mapping.get(AssociationKind.FILE_TYPE, {})),
            "url_schemes": dict(self.mapping.get(AssociationKind.URL_SCHEME, {})),
        }


# Activity entries are a closed set of variants; consumers dispatch on type.


@dataclass(frozen=True)
class BulkChangeDetail:
    kind: AssociationKind
    identifier: str
    old_handler_id: Optional[str] = None
    old_handler_name: Optional[str] = None
    new_handler_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "identifier": self.identifier,
            "old_handler_id": self.old_handler_id,
            "old_handler_name": self.old_handler_name,
            "new_handler_id": self.new_handler_id,
        }


@dataclass(frozen=True)
class ActivityEntry:
    entry_id: str
    timestamp: _dt.datetime

    ACTION: ClassVar[str] = ""

    @property
    def target(self) -> str:
        return ""

    @property
    def can_undo(self) -> bool:
        return False

    def describe(self) -> str:
        raise NotImplementedError

    def applied(self, kind: AssociationKind, identifier: str, handler_id: str) -> bool:
        """True when this entry set ``identifier`` to ``handler_id``."""
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "timestamp": format_timestamp(self.timestamp),
            "action": self.ACTION,
        }


@dataclass(frozen=True)
class SetSingle(ActivityEntry):
    kind: AssociationKind = AssociationKind.FILE_TYPE
    identifier: str = ""
    old_handler_id: Optional[str] = None
    old_handler_name: Optional[str] = None
    new_handler_id: Optional[str] = None
    new_handler_name: Optional[str] = None

    ACTION: ClassVar[str] = "set_single"

    @property
    def target(self) -> str:
        return self.identifier

    @property
    def can_undo(self) -> bool:
        return self.old_handler_id is not None

    def describe(self) -> str:
        old = self.old_handler_name or "none"
        new = self.new_handler_name or "none"
        return f"{self.kind.display(self.identifier)}: {old} -> {new}"

    def applied(self, kind: AssociationKind, identifier: str, handler_id: str) -> bool:
        return self.kind == kind and self.identifier == identifier and self.new_handler_id == handler_id

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({
            "kind": self.kind.value,
            "target": self.identifier,
            "old_handler_id": self.old_handler_id,
            "old_handler_name": self.old_handler_name,
            "new_handler_id": self.new_handler_id,
            "new_handler_name": self.new_handler_name,
        })
        return payload


@dataclass(frozen=True)
class SetBulk(ActivityEntry):
    details: Tuple[BulkChangeDetail, ...] = ()
    new_handler_id: Optional[str] = None
    new_handler_name: Optional[str] = None

    ACTION: ClassVar[str] = "set_bulk"

    @property
    def target(self) -> str:
        return str(len(self.details))

    @property
    def can_undo(self) -> bool:
        return bool(self.details)

    def describe(self) -> str:
        kinds = {detail.kind for detail in self.details}
        noun = "URL schemes" if kinds == {AssociationKind.URL_SCHEME} else "file types"
        if kinds == {AssociationKind.FILE_TYPE, AssociationKind.URL_SCHEME}:
            noun = "handlers"
        return f"{len(self.details)} {noun} -> {self.new_handler_name or 'previous handlers'}"

    def applied(self, kind: AssociationKind, identifier: str, handler_id: str) -> bool:
        for detail in self.details:
            if detail.kind != kind or detail.identifier != identifier:
                continue
            if (detail.new_handler_id or self.new_handler_id) == handler_id:
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({
            "target": self.target,
            "new_handler_id": self.new_handler_id,
            "new_handler_name": self.new_handler_name,
            "details": [detail.to_dict() for detail in self.details],
        })
        return payload


@dataclass(frozen=True)
class CreateBackup(ActivityEntry):
    filename: str = ""

    ACTION: ClassVar[str] = "create_backup"

    @property
    def target(self) -> str:
        return self.filename

    def describe(self) -> str:
        return "Created backup"

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["target"] = self.filename
        return payload


@dataclass(frozen=True)
class Restore(ActivityEntry):
    source: str = ""
    restored: int = 0
    failed: int = 0

    ACTION: ClassVar[str] = "restore"

    @property
    def target(self) -> str:
        return self.source

    def describe(self) -> str:
        text = f"Restored from {self.source}"
        if self.failed:
            text += f" ({self.failed} failed)"
        return text

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"target": self.source, "restored": self.restored, "failed": self.failed})
        return payload


ACTIVITY_TYPES = {cls.ACTION: cls for cls in (SetSingle, SetBulk, CreateBackup, Restore)}


@dataclass(frozen=True)
class ExternalChange:
    kind: AssociationKind
    identifier: str
    old_handler_id: Optional[str]
    old_handler_name: Optional[str]
    new_handler_id: Optional[str]
    new_handler_name: Optional[str]

    def key(self) -> AssociationKey:
        return (self.kind, self.identifier)

    def display_target(self) -> str:
        return self.kind.display(self.identifier)


@dataclass(frozen=True)
class ConsolidatedUndo:
    kind: AssociationKind
    identifier: str
    handler_id: str
    handler_name: str


@dataclass(frozen=True)
class BackupRecord:
    created_at: _dt.datetime
    os_version: str
    file_types: Dict[str, str]
    url_schemes: Dict[str, str]
    version: int = 1

    def mapping(self) -> Mapping:
        return {
            AssociationKind.FILE_TYPE: dict(self.file_types),
            AssociationKind.URL_SCHEME: dict(self.url_schemes),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "created_at": format_timestamp(self.created_at),
            "os_version": self.os_version,
            "file_types": dict(sorted(self.file_types.items())),
            "url_schemes": dict(sorted(self.url_schemes.items())),
        }


@dataclass(frozen=True)
class BackupInfo:
    path: str
    created_at: _dt.datetime
    os_version: str
    file_types_count: int
    schemes_count: int
    file_size: int


@dataclass(frozen=True)
class DiffEntry:
    kind: AssociationKind
    identifier: str
    current_handler: Optional[str]
    proposed_handler: str


@dataclass
class BatchResult:
    succeeded: List[AssociationKey] = field(default_factory=list)
    failed: Dict[AssociationKey, str] = field(default_factory=dict)
    entry: Optional[ActivityEntry] = None

    @property
    def ok(self) -> bool:
        return not self.failed

    def count(self, kind: AssociationKind) -> int:
        return sum(1 for item_kind, _identifier in self.succeeded if item_kind == kind)


class RestoreResult(BatchResult):
    def summary(self) -> str:
        files = self.count(AssociationKind.FILE_TYPE)
        schemes = self.count(AssociationKind.URL_SCHEME)
        return f"{files} files, {schemes} schemes"
