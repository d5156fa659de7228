import io
import json
import queue
import urllib.request

import updates
from updates import check_latest_release, parse_release, start_update_check


def _fake_urlopen(payload):
    def fake(req, timeout=None):
        return io.BytesIO(json.dumps(payload).encode("utf-8"))

    return fake


def test_parse_release() -> None:
    info = parse_release({"tag_name": "v1.2.0", "html_url": "https://example.test/r/1.2.0", "body": "notes"}, "1.0.0")
    assert info.latest_version == "1.2.0"
    assert info.release_notes == "notes"
    assert info.is_update_available
    assert parse_release({"tag_name": 12}, "1.0.0") is None
    assert parse_release([], "1.0.0") is None


def test_check_latest_release_only_reports_newer(monkeypatch) -> None:
    payload = {"tag_name": "v1.0.0", "html_url": "https://example.test/r/1.0.0"}
    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen(payload))
    assert check_latest_release("owner", "repo", "1.0.0") is None

    payload = {"tag_name": "v1.1.0", "html_url": "https://example.test/r/1.1.0"}
    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen(payload))
    assert check_latest_release("owner", "repo", "1.0.0").latest_version == "1.1.0"


def test_update_check_posts_errors(monkeypatch) -> None:
    def broken(owner, repo, current_version, timeout=5.0):
        raise OSError("offline")

    monkeypatch.setattr(updates, "check_latest_release", broken)
    events = queue.Queue()
    start_update_check("owner", "repo", "1.0.0", events).join(timeout=5)
    kind, exc = events.get_nowait()
    assert kind == "update_error"
    assert isinstance(exc, OSError)
