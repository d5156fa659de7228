import logging
import os
import platform
import re
from typing import Iterator, List, Optional, Tuple

from errors import RegistryRejection
from models import AssociationKind, HandlerInfo
from registry import HandlerRegistry

try:
    import winreg
except ImportError:  # pragma: no cover - Windows only
    winreg = None

logger = logging.getLogger(__name__)

FILE_EXTS_PATH = r"Software\Microsoft\Windows\CurrentVersion\Explorer\FileExts"
URL_ASSOCIATIONS_PATH = r"Software\Microsoft\Windows\Shell\Associations\UrlAssociations"
CLASSES_PATH = r"Software\Classes"
REGISTERED_APPS_PATH = r"Software\RegisteredApplications"


def command_executable(command: str) -> str:
    """Executable path from a shell ``open`` command line, or blank."""
    command = (command or "").strip()
    if not command:
        return ""
    if command.startswith('"'):
        end = command.find('"', 1)
        if end == -1:
            return ""
        return command[1:end]
    match = re.match(r"^(.+?\.exe)\b", command, re.IGNORECASE)
    if match:
        return match.group(1)
    return command.split()[0]


def display_name_for_executable(path: str) -> str:
    base = os.path.basename(path.replace("\\", "/"))
    stem, ext = os.path.splitext(base)
    if ext.lower() == ".exe" and stem:
        return stem
    return base


class WindowsHandlerRegistry(HandlerRegistry):
    """Handler table backed by the Windows registry; handler ids are ProgIDs.

    Windows guards the per-user ``UserChoice`` keys with a hash, so a change
    is written to ``HKCU\\Software\\Classes`` and read back. If the user choice
    still points elsewhere the request is rejected rather than reported as
    applied.
    """

    def __init__(self) -> None:
        if winreg is None:
            raise RuntimeError("The Windows handler registry is only available on Windows")

    # Low level helpers

    @staticmethod
    def _read_value(hive, path: str, name: str = "") -> Optional[str]:
        try:
            with winreg.OpenKey(hive, path, 0, winreg.KEY_READ) as key:
                value, _ = winreg.QueryValueEx(key, name)
        except OSError:
            return None
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @staticmethod
    def _value_names(hive, path: str) -> Iterator[Tuple[str, object]]:
        try:
            key = winreg.OpenKey(hive, path, 0, winreg.KEY_READ)
        except OSError:
            return
        with key:
            index = 0
            while True:
                try:
                    name, value, _kind = winreg.EnumValue(key, index)
                except OSError:
                    break
                index += 1
                yield name, value

    @staticmethod
    def _key_exists(hive, path: str) -> bool:
        try:
            with winreg.OpenKey(hive, path, 0, winreg.KEY_READ):
                return True
        except OSError:
            return False

    def _open_command(self, class_path: str) -> Optional[str]:
        return self._read_value(winreg.HKEY_CLASSES_ROOT, f"{class_path}\\shell\\open\\command")

    def _capability_handlers(self, section: str, name: str) -> List[str]:
        handlers: List[str] = []
        for hive in (winreg.HKEY_CURRENT_USER, winreg.HKEY_LOCAL_MACHINE):
            for _app_name, capability_path in self._value_names(hive, REGISTERED_APPS_PATH):
                if not isinstance(capability_path, str):
                    continue
                progid = self._read_value(hive, f"{capability_path}\\{section}", name)
                if progid and progid not in handlers:
                    handlers.append(progid)
        return handlers

    # HandlerRegistry

    def get_handler(self, kind: AssociationKind, identifier: str) -> Optional[str]:
        if kind is AssociationKind.FILE_TYPE:
            ext = f".{identifier}"
            choice = self._read_value(winreg.HKEY_CURRENT_USER, f"{FILE_EXTS_PATH}\\{ext}\\UserChoice", "ProgId")
            if choice:
                return choice
            return self._read_value(winreg.HKEY_CLASSES_ROOT, ext)
        choice = self._read_value(winreg.HKEY_CURRENT_USER, f"{URL_ASSOCIATIONS_PATH}\\{identifier}\\UserChoice", "ProgId")
        if choice:
            return choice
        command = self._open_command(identifier)
        if not command:
            return None
        for progid in self.get_all_handlers(kind, identifier):
            if self._open_command(progid) == command:
                return progid
        return None

    def get_all_handlers(self, kind: AssociationKind, identifier: str) -> List[str]:
        handlers: List[str] = []
        if kind is AssociationKind.FILE_TYPE:
            ext = f".{identifier}"
            sources = [
                (winreg.HKEY_CURRENT_USER, f"{FILE_EXTS_PATH}\\{ext}\\OpenWithProgids"),
                (winreg.HKEY_CLASSES_ROOT, f"{ext}\\OpenWithProgids"),
            ]
            for hive, path in sources:
                for name, _value in self._value_names(hive, path):
                    if name and name not in handlers:
                        handlers.append(name)
            capable = self._capability_handlers("Capabilities\\FileAssociations", ext)
        else:
            capable = self._capability_handlers("Capabilities\\URLAssociations", identifier)
        for progid in capable:
            if progid not in handlers:
                handlers.append(progid)
        return [progid for progid in handlers if self._key_exists(winreg.HKEY_CLASSES_ROOT, progid)]

    def set_handler(self, kind: AssociationKind, identifier: str, handler_id: str) -> None:
        if not self._key_exists(winreg.HKEY_CLASSES_ROOT, handler_id):
            raise RegistryRejection(kind, identifier, handler_id, f"Application {handler_id} not found")
        try:
            if kind is AssociationKind.FILE_TYPE:
                with winreg.CreateKey(winreg.HKEY_CURRENT_USER, f"{CLASSES_PATH}\\.{identifier}") as key:
                    winreg.SetValueEx(key, "", 0, winreg.REG_SZ, handler_id)
            else:
                command = self._open_command(handler_id)
                if not command:
                    raise RegistryRejection(kind, identifier, handler_id, f"{handler_id} has no open command")
                with winreg.CreateKey(winreg.HKEY_CURRENT_USER, f"{CLASSES_PATH}\\{identifier}") as key:
                    winreg.SetValueEx(key, "", 0, winreg.REG_SZ, f"URL:{identifier}")
                    winreg.SetValueEx(key, "URL Protocol", 0, winreg.REG_SZ, "")
                with winreg.CreateKey(winreg.HKEY_CURRENT_USER, f"{CLASSES_PATH}\\{identifier}\\shell\\open\\command") as key:
                    winreg.SetValueEx(key, "", 0, winreg.REG_SZ, command)
        except OSError as exc:
            raise RegistryRejection(kind, identifier, handler_id, str(exc)) from exc
        actual = self.get_handler(kind, identifier)
        if actual != handler_id:
            logger.warning("%s still resolves to %s after writing %s", kind.display(identifier), actual, handler_id)
            raise RegistryRejection(
                kind,
                identifier,
                handler_id,
                f"Windows kept {actual or 'no handler'}; the user choice can only be changed from Settings",
            )

    def resolve_handler_info(self, handler_id: str) -> Optional[HandlerInfo]:
        if not handler_id or not self._key_exists(winreg.HKEY_CLASSES_ROOT, handler_id):
            return None
        hkcr = winreg.HKEY_CLASSES_ROOT
        name = (
            self._read_value(hkcr, f"{handler_id}\\Application", "ApplicationName")
            or self._read_value(hkcr, f"{handler_id}\\shell\\open", "FriendlyAppName")
        )
        if not name:
            exe = command_executable(self._open_command(handler_id) or "")
            name = display_name_for_executable(exe) if exe else ""
        if not name:
            name = self._read_value(hkcr, handler_id) or handler_id
        icon = self._read_value(hkcr, f"{handler_id}\\DefaultIcon") or ""
        return HandlerInfo(handler_id=handler_id, name=name, icon_ref=icon)

    def os_version(self) -> str:
        return f"Windows {platform.release()} ({platform.version()})"
