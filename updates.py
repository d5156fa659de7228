import json
import logging
import queue
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional

from utils import is_newer_version

logger = logging.getLogger(__name__)

RELEASES_URL = "https://api.github.com/repos/{owner}/{repo}/releases/latest"


@dataclass(frozen=True)
class UpdateInfo:
    current_version: str
    latest_version: str
    release_url: str
    release_notes: Optional[str] = None

    @property
    def is_update_available(self) -> bool:
        return is_newer_version(self.latest_version, self.current_version)


def parse_release(payload, current_version: str) -> Optional[UpdateInfo]:
    if not isinstance(payload, dict):
        return None
    tag = payload.get("tag_name")
    url = payload.get("html_url")
    if not isinstance(tag, str) or not isinstance(url, str):
        return None
    notes = payload.get("body")
    return UpdateInfo(
        current_version=current_version,
        latest_version=tag.strip().lstrip("vV"),
        release_url=url,
        release_notes=notes if isinstance(notes, str) else None,
    )


def check_latest_release(owner: str, repo: str, current_version: str, timeout: float = 5.0) -> Optional[UpdateInfo]:
    """Latest release if it is newer than ``current_version``."""
    req = urllib.request.Request(
        url=RELEASES_URL.format(owner=owner, repo=repo),
        headers={"Accept": "application/vnd.github+json", "User-Agent": "handlerwatch"},
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        payload = json.loads(resp.read().decode("utf-8", errors="replace") or "{}")
    info = parse_release(payload, current_version)
    if info is None or not info.is_update_available:
        return None
    return info


def start_update_check(owner: str, repo: str, current_version: str, events: queue.Queue) -> threading.Thread:
    """Check for a release on a daemon thread; the result is posted to ``events``."""

    def worker() -> None:
        try:
            info = check_latest_release(owner, repo, current_version)
        except (OSError, ValueError, urllib.error.URLError) as exc:
            events.put(("update_error", exc))
            return
        events.put(("update_checked", info))

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    return thread
