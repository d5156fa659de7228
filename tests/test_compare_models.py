import datetime as _dt
from typing import Iterable, Tuple

from compare import restore_diff, substitutions
from models import (
    AssociationKey,
    AssociationKind,
    BulkChangeDetail,
    CreateBackup,
    DiffEntry,
    Mapping,
    Restore,
    RestoreResult,
    SetBulk,
    SetSingle,
    empty_mapping,
)
from store import parse_activity_entry

FT = AssociationKind.FILE_TYPE
US = AssociationKind.URL_SCHEME
NOW = _dt.datetime(2024, 5, 1, 12, 0, tzinfo=_dt.timezone.utc)


def mapping_from_pairs(pairs: Iterable[Tuple[AssociationKey, str]]) -> Mapping:
    mapping = empty_mapping()
    for (kind, identifier), handler_id in pairs:
        mapping[kind][identifier] = handler_id
    return mapping


def test_substitutions_only_reports_replaced_handlers() -> None:
    baseline = mapping_from_pairs([((FT, "json"), "AppA"), ((FT, "txt"), "AppA"), ((US, "https"), "Browser")])
    current = mapping_from_pairs([((FT, "json"), "AppB"), ((FT, "md"), "AppA"), ((US, "https"), "Browser")])
    assert substitutions(baseline, current) == [((FT, "json"), "AppA", "AppB")]


def test_restore_diff_skips_matching_handlers() -> None:
    candidate = mapping_from_pairs([((FT, "json"), "AppA"), ((FT, "txt"), "AppB")])
    live = {(FT, "json"): "AppA", (FT, "txt"): "AppC"}
    diff = restore_diff(candidate, lambda kind, identifier: live.get((kind, identifier)))
    assert diff == [DiffEntry(kind=FT, identifier="txt", current_handler="AppC", proposed_handler="AppB")]


def test_set_single_describe_and_undo() -> None:
    entry = SetSingle(
        entry_id="a1",
        timestamp=NOW,
        kind=FT,
        identifier="json",
        old_handler_id="AppA",
        old_handler_name="App A",
        new_handler_id="AppB",
        new_handler_name="App B",
    )
    assert entry.describe() == ".json: App A -> App B"
    assert entry.can_undo is True
    assert entry.applied(FT, "json", "AppB") is True
    assert entry.applied(FT, "json", "AppA") is False

    scheme = SetSingle(entry_id="a2", timestamp=NOW, kind=US, identifier="https", new_handler_id="B", new_handler_name="B")
    assert scheme.describe() == "https://: none -> B"
    assert scheme.can_undo is False


def test_set_bulk_describe_and_applied() -> None:
    entry = SetBulk(
        entry_id="b1",
        timestamp=NOW,
        details=(
            BulkChangeDetail(kind=FT, identifier="json", old_handler_id="AppA"),
            BulkChangeDetail(kind=FT, identifier="txt", old_handler_id="AppA"),
            BulkChangeDetail(kind=FT, identifier="md"),
        ),
        new_handler_id="AppB",
        new_handler_name="App B",
    )
    assert entry.describe() == "3 file types -> App B"
    assert entry.target == "3"
    assert entry.applied(FT, "txt", "AppB") is True
    assert entry.applied(US, "txt", "AppB") is False
    assert SetBulk(entry_id="b2", timestamp=NOW).can_undo is False


def test_backup_and_restore_entries_are_not_undoable() -> None:
    backup = CreateBackup(entry_id="c1", timestamp=NOW, filename="backup-1.json")
    restore = Restore(entry_id="c2", timestamp=NOW, source="backup-1.json", restored=4, failed=1)
    assert backup.describe() == "Created backup"
    assert restore.describe() == "Restored from backup-1.json (1 failed)"
    assert not backup.can_undo
    assert not restore.can_undo


def test_activity_entry_survives_serialisation() -> None:
    entry = SetBulk(
        entry_id="b1",
        timestamp=NOW,
        details=(BulkChangeDetail(kind=US, identifier="https", old_handler_id="A", new_handler_id="B"),),
    )
    assert parse_activity_entry(entry.to_dict()) == entry


def test_restore_result_summary() -> None:
    result = RestoreResult(succeeded=[(FT, "json"), (FT, "txt"), (US, "https")], failed={(FT, "md"): "denied"})
    assert result.summary() == "2 files, 1 schemes"
    assert result.ok is False
