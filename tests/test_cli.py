import json
import sys

import pytest

import cli
from models import AssociationKind
from registry import InMemoryRegistry

FT = AssociationKind.FILE_TYPE
US = AssociationKind.URL_SCHEME


@pytest.fixture
def registry(tmp_path, monkeypatch):
    for name in ("XDG_CONFIG_HOME", "LOCALAPPDATA", "APPDATA"):
        monkeypatch.setenv(name, str(tmp_path / "config"))
    monkeypatch.delenv("HANDLERWATCH_DATA_DIR", raising=False)
    fake = InMemoryRegistry(
        apps={"AppA": "App A", "AppB": "App B"},
        defaults={(FT, "json"): "AppA", (US, "https"): "AppA"},
    )
    monkeypatch.setattr(cli, "create_registry", lambda: fake)
    return fake


def _run(tmp_path, *argv) -> int:
    return cli.main(["--data-dir", str(tmp_path / "data"), *argv])


def test_set_then_undo(registry, tmp_path, capsys) -> None:
    assert _run(tmp_path, "set", ".json", "AppB") == 0
    out = capsys.readouterr().out
    assert ".json: App A -> App B" in out
    assert registry.defaults[(FT, "json")] == "AppB"

    assert _run(tmp_path, "--json", "activity") == 0
    entries = json.loads(capsys.readouterr().out)
    assert [entry["action"] for entry in entries] == ["set_single"]
    assert entries[0]["undoable"] is True

    assert _run(tmp_path, "undo", entries[0]["id"][:8]) == 0
    assert registry.defaults[(FT, "json")] == "AppA"


def test_rejected_set_returns_error(registry, tmp_path, capsys) -> None:
    registry.rejections[(US, "https")] = "Access is denied"
    assert _run(tmp_path, "set", "https://", "AppB") == 1
    assert "Access is denied" in capsys.readouterr().err


def test_changes_and_dismiss(registry, tmp_path, capsys) -> None:
    assert _run(tmp_path, "changes") == 0
    assert "No external changes" in capsys.readouterr().out

    registry.defaults[(FT, "json")] = "AppB"
    assert _run(tmp_path, "--json", "changes") == 0
    changes = json.loads(capsys.readouterr().out)
    assert [(change["identifier"], change["new_handler_id"]) for change in changes] == [("json", "AppB")]

    registry.defaults[(US, "https")] = "AppB"
    assert _run(tmp_path, "changes", "--revert") == 0
    assert registry.defaults[(US, "https")] == "AppA"


def test_backup_and_restore_preview(registry, tmp_path, capsys) -> None:
    assert _run(tmp_path, "backup") == 0
    capsys.readouterr()
    registry.defaults[(FT, "json")] = "AppB"

    assert _run(tmp_path, "--json", "restore", "--preview") == 0
    diff = json.loads(capsys.readouterr().out)
    assert diff == [{"kind": "file_type", "identifier": "json", "current_handler": "AppB", "proposed_handler": "AppA"}]

    assert _run(tmp_path, "restore") == 0
    assert "Restored 1 files, 0 schemes" in capsys.readouterr().out
    assert registry.defaults[(FT, "json")] == "AppA"


def test_export_csv(registry, tmp_path, capsys) -> None:
    target = tmp_path / "out.csv"
    assert _run(tmp_path, "export", str(target)) == 0
    assert target.read_text(encoding="utf-8").startswith("Kind,Identifier")


@pytest.mark.skipif(sys.platform == "win32", reason="the Windows registry is available")
def test_missing_registry_backend(tmp_path, monkeypatch, capsys) -> None:
    for name in ("XDG_CONFIG_HOME", "LOCALAPPDATA", "APPDATA"):
        monkeypatch.setenv(name, str(tmp_path / "config"))
    assert cli.main(["--data-dir", str(tmp_path), "list"]) == 2
    assert "only available on Windows" in capsys.readouterr().err


def test_config_sets_default_data_dir(registry, tmp_path, capsys) -> None:
    configured = tmp_path / "configured"
    assert cli.main(["--json", "config", "--set-data-dir", str(configured), "--set-log-level", "info"]) == 0
    assert json.loads(capsys.readouterr().out) == {"data_dir": str(configured), "log_level": "info"}

    assert cli.main(["set", ".json", "AppB"]) == 0
    assert (configured / "activity_log.json").exists()

    assert cli.main(["config", "--set-data-dir", ""]) == 0
    out = capsys.readouterr().out
    assert "data_dir     (default)" in out
    assert "log_level    info" in out
