import datetime as _dt
import re
from typing import Iterable, List, Optional, Tuple

from models import AssociationKind


def normalize_extension(raw: str) -> str:
    """Return a bare extension: ``".JSON "`` and ``"*.json"`` become ``"json"``."""
    text = (raw or "").strip()
    if text.startswith("*"):
        text = text[1:]
    return text.lstrip(".").lower()


def normalize_scheme(raw: str) -> str:
    text = (raw or "").strip().lower()
    for suffix in ("://", ":"):
        if text.endswith(suffix):
            text = text[: -len(suffix)]
            break
    return text


def normalize_identifier(kind: AssociationKind, raw: str) -> str:
    if kind is AssociationKind.URL_SCHEME:
        return normalize_scheme(raw)
    return normalize_extension(raw)


def guess_kind(raw: str, known_extensions: Iterable[str] = ()) -> AssociationKind:
    text = (raw or "").strip()
    if text.endswith(":") or "://" in text:
        return AssociationKind.URL_SCHEME
    if text.startswith(".") or text.startswith("*."):
        return AssociationKind.FILE_TYPE
    if text.lower() in {ext.lower() for ext in known_extensions}:
        return AssociationKind.FILE_TYPE
    return AssociationKind.URL_SCHEME


def parse_timestamp(raw) -> Optional[_dt.datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = _dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    return value


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def unique_casefold(values: Iterable[str]) -> List[str]:
    seen = set()
    result: List[str] = []
    for value in values:
        name = str(value).strip()
        if not name:
            continue
        folded = name.casefold()
        if folded in seen:
            continue
        seen.add(folded)
        result.append(name)
    return result


def version_tuple(raw: str) -> Tuple[int, ...]:
    text = (raw or "").strip().lstrip("vV")
    parts: List[int] = []
    for piece in text.split("."):
        match = re.match(r"^(\d+)", piece)
        if not match:
            break
        parts.append(int(match.group(1)))
    while parts and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def is_newer_version(latest: str, current: str) -> bool:
    return version_tuple(latest) > version_tuple(current)


def backup_timestamp(value: _dt.datetime) -> str:
    # Colons are not valid in Windows file names.
    return value.strftime("%Y-%m-%dT%H-%M-%S")
