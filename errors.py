from typing import Iterable, Optional, Tuple


class HandlerWatchError(Exception):
    """Base class for every error raised by the association engine."""


class RegistryRejection(HandlerWatchError):
    """The operating system refused a set-handler request."""

    def __init__(self, kind, identifier: str, handler_id: str, reason: str) -> None:
        self.kind = kind
        self.identifier = identifier
        self.handler_id = handler_id
        self.reason = reason
        super().__init__(reason)


class HandlerUnavailable(HandlerWatchError):
    def __init__(self, handler_id: str, name: str = "") -> None:
        self.handler_id = handler_id
        self.name = name or handler_id
        super().__init__(f"{self.name} is no longer available")


class StateDrift(HandlerWatchError):
    """Current handlers no longer match what an undo expects."""

    def __init__(self, identifiers: Iterable[str], entry_id: Optional[str] = None) -> None:
        self.identifiers: Tuple[str, ...] = tuple(identifiers)
        self.entry_id = entry_id
        if len(self.identifiers) == 1:
            message = f"{self.identifiers[0]} was changed externally"
        else:
            message = f"{len(self.identifiers)} handlers changed externally"
        super().__init__(message)


class UnknownAssociation(HandlerWatchError):
    def __init__(self, kind, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"Unknown association: {identifier}")


class UnknownActivityEntry(HandlerWatchError):
    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"No activity entry with id {entry_id}")


class NotUndoable(HandlerWatchError):
    pass


class BackupError(HandlerWatchError):
    pass


class StorageError(HandlerWatchError):
    """A snapshot, activity log or config file could not be written."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Could not write {path}: {reason}")
