from typing import List, Optional, Tuple

from models import AssociationKey, AssociationKind, DiffEntry, Mapping


def substitutions(baseline: Mapping, current: Mapping) -> List[Tuple[AssociationKey, str, str]]:
    """Identifiers whose handler was replaced between two mappings.

    Only identifiers present on both sides count; handlers appearing or
    disappearing are reported by the registry without anyone acting on them.
    """
    results: List[Tuple[AssociationKey, str, str]] = []
    for kind in AssociationKind:
        old_side = baseline.get(kind, {})
        new_side = current.get(kind, {})
        for identifier in sorted(old_side):
            old = old_side[identifier]
            new = new_side.get(identifier)
            if not old or not new or old == new:
                continue
            results.append(((kind, identifier), old, new))
    return results


def restore_diff(candidate: Mapping, current_handler) -> List[DiffEntry]:
    """Entries of ``candidate`` that differ from the live handler.

    ``current_handler`` is called as ``current_handler(kind, identifier)``.
    """
    diff: List[DiffEntry] = []
    for kind in AssociationKind:
        for identifier, proposed in sorted(candidate.get(kind, {}).items()):
            if not proposed:
                continue
            current: Optional[str] = current_handler(kind, identifier)
            if current != proposed:
                diff.append(DiffEntry(kind=kind, identifier=identifier, current_handler=current, proposed_handler=proposed))
    return diff
