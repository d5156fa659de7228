import datetime as _dt
import json
import os

import pytest

import store
from errors import StorageError
from models import AssociationKind, SetSingle, empty_mapping
from store import SnapshotStore, load_activity, parse_activity_entry, resolve_data_dir, save_activity

FT = AssociationKind.FILE_TYPE
US = AssociationKind.URL_SCHEME
NOW = _dt.datetime(2024, 5, 1, 12, 0, tzinfo=_dt.timezone.utc)


def _use_config_home(monkeypatch, path) -> None:
    for name in ("XDG_CONFIG_HOME", "LOCALAPPDATA", "APPDATA"):
        monkeypatch.setenv(name, str(path))
    monkeypatch.delenv(store.ENV_DATA_DIR, raising=False)


def test_snapshot_round_trip(tmp_path) -> None:
    path = tmp_path / "snapshot.json"
    snapshots = SnapshotStore(str(path), clock=lambda: NOW)
    assert snapshots.load() is None

    mapping = empty_mapping()
    mapping[FT]["json"] = "AppA"
    mapping[US]["https"] = "Browser"
    saved = snapshots.save(mapping)

    reloaded = SnapshotStore(str(path)).load()
    assert reloaded == saved
    assert reloaded.handler_for(FT, "json") == "AppA"
    assert reloaded.handler_for(US, "mailto") is None


def test_unreadable_snapshot_means_no_baseline(tmp_path) -> None:
    path = tmp_path / "snapshot.json"
    path.write_text("{not json", encoding="utf-8")
    assert SnapshotStore(str(path)).load() is None

    path.write_text(json.dumps({"file_types": {"json": "AppA"}}), encoding="utf-8")
    assert SnapshotStore(str(path)).load() is None


def test_snapshot_drops_blank_handlers(tmp_path) -> None:
    path = tmp_path / "snapshot.json"
    payload = {"timestamp": "2024-05-01T12:00:00+00:00", "file_types": {"json": "AppA", "txt": "", "": "X"}, "url_schemes": []}
    path.write_text(json.dumps(payload), encoding="utf-8")
    snapshot = SnapshotStore(str(path)).load()
    assert snapshot.mapping == {FT: {"json": "AppA"}, US: {}}


def test_resolve_data_dir_precedence(tmp_path, monkeypatch) -> None:
    _use_config_home(monkeypatch, tmp_path / "cfg")
    assert resolve_data_dir() == os.path.join(str(tmp_path / "cfg"), store.APP_NAME)

    store.update_config({"data_dir": str(tmp_path / "configured")})
    assert resolve_data_dir() == str(tmp_path / "configured")

    monkeypatch.setenv(store.ENV_DATA_DIR, str(tmp_path / "env"))
    assert resolve_data_dir() == str(tmp_path / "env")
    assert resolve_data_dir(str(tmp_path / "explicit")) == str(tmp_path / "explicit")


def test_config_ignores_unknown_and_non_string_values(tmp_path, monkeypatch) -> None:
    _use_config_home(monkeypatch, tmp_path)
    config_dir = tmp_path / store.APP_NAME
    config_dir.mkdir()
    payload = {"data_dir": "  ", "backup_dir": str(tmp_path / "b"), "log_level": 10, "theme": "dark"}
    (config_dir / store.CONFIG_FILENAME).write_text(json.dumps(payload), encoding="utf-8")
    assert store.load_config() == {"backup_dir": str(tmp_path / "b")}
    assert store.resolve_backup_dir(str(tmp_path / "data")) == str(tmp_path / "b")


def test_parse_activity_entry_rejects_malformed() -> None:
    assert parse_activity_entry({"id": "x", "timestamp": "bad", "action": "set_single"}) is None
    assert parse_activity_entry({"id": "x", "timestamp": "2024-05-01T12:00:00Z", "action": "rename"}) is None
    assert parse_activity_entry({"id": "x", "timestamp": "2024-05-01T12:00:00Z", "action": "set_single"}) is None
    assert parse_activity_entry("set_single") is None

    entry = parse_activity_entry({
        "id": "x",
        "timestamp": "2024-05-01T12:00:00Z",
        "action": "set_single",
        "kind": "file_type",
        "target": "json",
        "old_handler_id": "",
        "new_handler_id": "AppB",
    })
    assert isinstance(entry, SetSingle)
    assert entry.old_handler_id is None
    assert entry.can_undo is False


def test_activity_file_round_trip(tmp_path) -> None:
    path = str(tmp_path / "activity_log.json")
    older = SetSingle(entry_id="a", timestamp=NOW, kind=FT, identifier="json", old_handler_id="A", new_handler_id="B")
    newer = SetSingle(
        entry_id="b", timestamp=NOW + _dt.timedelta(minutes=1), kind=FT, identifier="txt", old_handler_id="A", new_handler_id="B"
    )
    save_activity(path, [older, newer], {"a", "missing"})
    entries, invalidated = load_activity(path)
    assert [entry.entry_id for entry in entries] == ["b", "a"]
    assert invalidated == {"a"}


def test_activity_file_accepts_plain_list(tmp_path) -> None:
    path = tmp_path / "activity_log.json"
    entry = SetSingle(entry_id="a", timestamp=NOW, kind=US, identifier="https", old_handler_id="A", new_handler_id="B")
    path.write_text(json.dumps([entry.to_dict(), {"garbage": True}]), encoding="utf-8")
    entries, invalidated = load_activity(str(path))
    assert entries == [entry]
    assert invalidated == set()


def test_update_config_merges_and_clears(tmp_path, monkeypatch) -> None:
    _use_config_home(monkeypatch, tmp_path)
    store.update_config({"data_dir": str(tmp_path / "d"), "log_level": " info "})
    config = store.update_config({"log_level": None, "backup_dir": str(tmp_path / "b"), "theme": "dark"})
    assert config == {"data_dir": str(tmp_path / "d"), "backup_dir": str(tmp_path / "b"), "log_level": "info"}

    assert store.update_config({"data_dir": ""}) == {"backup_dir": str(tmp_path / "b"), "log_level": "info"}
    assert store.load_config() == {"backup_dir": str(tmp_path / "b"), "log_level": "info"}


def test_write_failures_raise(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    snapshots = SnapshotStore(str(blocker / "snapshot.json"), clock=lambda: NOW)
    assert snapshots.load() is None

    with pytest.raises(StorageError):
        snapshots.save(empty_mapping())
    assert snapshots.load() is None
    with pytest.raises(StorageError):
        save_activity(str(blocker / "activity_log.json"), [], set())
