import datetime as _dt

from activity import ActivityLog
from catalog import AssociationCatalog
from detector import ChangeDetector
from models import AssociationKind, ExternalChange, SetSingle, empty_mapping
from registry import InMemoryRegistry
from store import SnapshotStore

FT = AssociationKind.FILE_TYPE
US = AssociationKind.URL_SCHEME
START = _dt.datetime(2024, 5, 1, 12, 0, tzinfo=_dt.timezone.utc)


def _registry() -> InMemoryRegistry:
    return InMemoryRegistry(
        apps={"AppA": "App A", "AppB": "App B"},
        defaults={(FT, "json"): "AppA", (FT, "txt"): "AppA", (US, "https"): "AppA"},
    )


def _detector(registry, tmp_path, activity=None) -> ChangeDetector:
    catalog = AssociationCatalog(registry, extensions=["json", "txt", "md"], schemes=["https"])
    for kind in AssociationKind:
        catalog.load(kind)
    snapshots = SnapshotStore(str(tmp_path / "snapshot.json"), clock=lambda: START)
    return ChangeDetector(catalog, snapshots, activity or ActivityLog(clock=lambda: START))


def test_first_run_records_baseline(tmp_path) -> None:
    registry = _registry()
    detector = _detector(registry, tmp_path)
    assert detector.detect() == []
    assert detector.has_run is True
    snapshot = SnapshotStore(str(tmp_path / "snapshot.json")).load()
    assert snapshot.mapping[FT] == {"json": "AppA", "txt": "AppA"}


def test_external_change_reported_once(tmp_path) -> None:
    registry = _registry()
    _detector(registry, tmp_path).detect()

    registry.defaults[(FT, "json")] = "AppB"
    registry.defaults[(FT, "md")] = "AppB"
    detector = _detector(registry, tmp_path)
    assert detector.detect() == [
        ExternalChange(
            kind=FT,
            identifier="json",
            old_handler_id="AppA",
            old_handler_name="App A",
            new_handler_id="AppB",
            new_handler_name="App B",
        )
    ]
    assert detector.detect() == []
    assert _detector(registry, tmp_path).detect() == []


def test_changes_logged_after_baseline_are_ours(tmp_path) -> None:
    snapshots = SnapshotStore(str(tmp_path / "snapshot.json"), clock=lambda: START - _dt.timedelta(minutes=5))
    baseline = empty_mapping()
    baseline[FT].update({"json": "AppA", "txt": "AppA"})
    snapshots.save(baseline)

    registry = _registry()
    registry.defaults[(FT, "json")] = "AppB"
    registry.defaults[(FT, "txt")] = "AppB"
    activity = ActivityLog(clock=lambda: START)
    activity.append(SetSingle(
        entry_id="ours",
        timestamp=START,
        kind=FT,
        identifier="json",
        old_handler_id="AppA",
        new_handler_id="AppB",
    ))
    changes = _detector(registry, tmp_path, activity).detect()
    assert [change.identifier for change in changes] == ["txt"]


def test_failure_degrades_to_no_changes(tmp_path) -> None:
    registry = _registry()
    detector = _detector(registry, tmp_path)

    def broken(kind, identifier):
        raise OSError("registry unavailable")

    detector.catalog.current_mapping = lambda: broken(FT, "json")
    assert detector.detect() == []
    assert detector.has_run is False


def test_same_second_change_is_ours_after_reload(tmp_path) -> None:
    snapshots = SnapshotStore(str(tmp_path / "snapshot.json"), clock=lambda: START.replace(microsecond=100000))
    baseline = empty_mapping()
    baseline[FT].update({"json": "AppA", "txt": "AppA"})
    snapshots.save(baseline)

    log_path = str(tmp_path / "activity_log.json")
    ActivityLog(log_path, clock=lambda: START).append(SetSingle(
        entry_id="ours",
        timestamp=START.replace(microsecond=600000),
        kind=FT,
        identifier="json",
        old_handler_id="AppA",
        new_handler_id="AppB",
    ))
    registry = _registry()
    registry.defaults[(FT, "json")] = "AppB"

    activity = ActivityLog(log_path, clock=lambda: START)
    activity.load()
    assert activity.entries[0].timestamp == START.replace(microsecond=600000)
    assert _detector(registry, tmp_path, activity).detect() == []
