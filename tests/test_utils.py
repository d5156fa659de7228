import datetime as _dt

from models import AssociationKind
from utils import (
    backup_timestamp,
    guess_kind,
    is_newer_version,
    normalize_extension,
    normalize_identifier,
    normalize_scheme,
    parse_timestamp,
    unique_casefold,
    version_tuple,
)


def test_normalize_extension() -> None:
    assert normalize_extension(".json") == "json"
    assert normalize_extension(" *.md ") == "md"
    assert normalize_extension("txt") == "txt"
    assert normalize_extension(".JSON ") == "json"
    assert normalize_extension("") == ""


def test_normalize_scheme() -> None:
    assert normalize_scheme("HTTPS://") == "https"
    assert normalize_scheme("mailto:") == "mailto"
    assert normalize_scheme(" ssh ") == "ssh"
    assert normalize_identifier(AssociationKind.URL_SCHEME, "Zoom:") == "zoom"
    assert normalize_identifier(AssociationKind.FILE_TYPE, ".PDF") == "pdf"


def test_guess_kind() -> None:
    assert guess_kind(".json") is AssociationKind.FILE_TYPE
    assert guess_kind("mailto:") is AssociationKind.URL_SCHEME
    assert guess_kind("https://") is AssociationKind.URL_SCHEME
    assert guess_kind("py", ["py", "txt"]) is AssociationKind.FILE_TYPE
    assert guess_kind("slack", ["py"]) is AssociationKind.URL_SCHEME


def test_parse_timestamp() -> None:
    utc = _dt.timezone.utc
    assert parse_timestamp("2024-05-01T12:00:00Z") == _dt.datetime(2024, 5, 1, 12, tzinfo=utc)
    assert parse_timestamp("2024-05-01T12:00:00") == _dt.datetime(2024, 5, 1, 12, tzinfo=utc)
    assert parse_timestamp("2024-05-01T14:00:00+02:00") == _dt.datetime(2024, 5, 1, 12, tzinfo=utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
    assert parse_timestamp(1714564800) is None


def test_unique_casefold() -> None:
    assert unique_casefold(["Alpha", "alpha", "Beta", "", "  "]) == ["Alpha", "Beta"]


def test_version_compare() -> None:
    assert version_tuple("v1.2.0") == (1, 2)
    assert version_tuple("1.10.3-beta") == (1, 10, 3)
    assert is_newer_version("1.10.0", "1.9.9") is True
    assert is_newer_version("v1.0", "1.0.0") is False
    assert is_newer_version("garbage", "1.0.0") is False


def test_backup_timestamp_is_file_name_safe() -> None:
    stamp = backup_timestamp(_dt.datetime(2024, 5, 1, 9, 5, 7, tzinfo=_dt.timezone.utc))
    assert stamp == "2024-05-01T09-05-07"
    assert ":" not in stamp
