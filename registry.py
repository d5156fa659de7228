from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from errors import RegistryRejection
from models import AssociationKey, AssociationKind, HandlerInfo


class HandlerRegistry(ABC):
    """The operating system's handler table.

    Implementations answer lookups for a single identifier at a time and raise
    ``RegistryRejection`` when the system refuses a ``set_handler`` request.
    """

    @abstractmethod
    def get_handler(self, kind: AssociationKind, identifier: str) -> Optional[str]:
        ...

    @abstractmethod
    def get_all_handlers(self, kind: AssociationKind, identifier: str) -> List[str]:
        ...

    @abstractmethod
    def set_handler(self, kind: AssociationKind, identifier: str, handler_id: str) -> None:
        ...

    @abstractmethod
    def resolve_handler_info(self, handler_id: str) -> Optional[HandlerInfo]:
        ...

    def os_version(self) -> str:
        return ""


class InMemoryRegistry(HandlerRegistry):
    """Registry held in dictionaries; used for dry runs and tests.

    ``rejections`` maps an association key to the reason returned for any
    set request on it, mimicking a system that refuses specific changes.
    """

    def __init__(
        self,
        apps: Optional[Dict[str, str]] = None,
        defaults: Optional[Dict[AssociationKey, str]] = None,
        capable: Optional[Dict[AssociationKey, List[str]]] = None,
        os_version: str = "in-memory",
    ) -> None:
        self.apps: Dict[str, HandlerInfo] = {
            handler_id: HandlerInfo(handler_id=handler_id, name=name)
            for handler_id, name in (apps or {}).items()
        }
        self.defaults: Dict[AssociationKey, str] = dict(defaults or {})
        self.capable: Dict[AssociationKey, List[str]] = {key: list(value) for key, value in (capable or {}).items()}
        self.rejections: Dict[AssociationKey, str] = {}
        self.set_calls: List[AssociationKey] = []
        self._os_version = os_version

    def install(self, handler_id: str, name: str) -> None:
        self.apps[handler_id] = HandlerInfo(handler_id=handler_id, name=name)

    def uninstall(self, handler_id: str) -> None:
        self.apps.pop(handler_id, None)
        for handlers in self.capable.values():
            if handler_id in handlers:
                handlers.remove(handler_id)

    def get_handler(self, kind: AssociationKind, identifier: str) -> Optional[str]:
        return self.defaults.get((kind, identifier))

    def get_all_handlers(self, kind: AssociationKind, identifier: str) -> List[str]:
        handlers = [handler_id for handler_id in self.capable.get((kind, identifier), []) if handler_id in self.apps]
        current = self.defaults.get((kind, identifier))
        if current and current in self.apps and current not in handlers:
            handlers.append(current)
        return sorted(handlers, key=lambda handler_id: self.apps[handler_id].name.lower())

    def set_handler(self, kind: AssociationKind, identifier: str, handler_id: str) -> None:
        key = (kind, identifier)
        self.set_calls.append(key)
        reason = self.rejections.get(key)
        if reason:
            raise RegistryRejection(kind, identifier, handler_id, reason)
        if handler_id not in self.apps:
            raise RegistryRejection(kind, identifier, handler_id, f"Application {handler_id} not found")
        self.defaults[key] = handler_id
        capable = self.capable.setdefault(key, [])
        if handler_id not in capable:
            capable.append(handler_id)

    def resolve_handler_info(self, handler_id: str) -> Optional[HandlerInfo]:
        return self.apps.get(handler_id)

    def os_version(self) -> str:
        return self._os_version
