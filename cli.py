"""Command line interface for HandlerWatch."""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from catalog import COMMON_EXTENSIONS
from engine import AssociationEngine
from errors import HandlerWatchError
from models import ActivityEntry, Association, AssociationKind, BatchResult, format_timestamp
from registry import HandlerRegistry
from store import CONFIG_KEYS, load_config, update_config
from utils import guess_kind, normalize_identifier

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
KIND_CHOICES = [kind.value for kind in AssociationKind]


def create_registry() -> HandlerRegistry:
    from windows_registry import WindowsHandlerRegistry

    return WindowsHandlerRegistry()


def configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else load_config().get("log_level", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _kind_for(args: argparse.Namespace) -> AssociationKind:
    if getattr(args, "kind", None):
        return AssociationKind(args.kind)
    return guess_kind(args.identifier, COMMON_EXTENSIONS)


def _format_association(assoc: Association) -> str:
    handler = f"{assoc.current_name} ({assoc.current_handler})" if assoc.current_handler else "(none)"
    return f"{assoc.display_name():<20} {handler}"


def _entry_payload(entry: ActivityEntry, undoable: bool) -> Dict[str, Any]:
    payload = entry.to_dict()
    payload["description"] = entry.describe()
    payload["undoable"] = undoable
    return payload


def _result_payload(result: BatchResult) -> Dict[str, Any]:
    return {
        "succeeded": [kind.display(identifier) for kind, identifier in result.succeeded],
        "failed": {kind.display(identifier): reason for (kind, identifier), reason in result.failed.items()},
        "entry": result.entry.entry_id if result.entry else None,
    }


def _report_result(result: BatchResult, as_json: bool, verb: str) -> int:
    if as_json:
        _print_json(_result_payload(result))
    else:
        print(f"{verb} {len(result.succeeded)} handlers")
        for (kind, identifier), reason in result.failed.items():
            print(f"  failed {kind.display(identifier)}: {reason}")
    return 0 if result.ok else 1


def cmd_get(engine: AssociationEngine, args: argparse.Namespace) -> int:
    kind = _kind_for(args)
    engine.load_associations(kind)
    identifier = engine.catalog.track(kind, args.identifier)
    assoc = engine.catalog.refresh_one(kind, identifier)
    if args.json:
        _print_json(assoc.to_dict())
        return 0
    print(_format_association(assoc))
    for handler_id in assoc.available_handlers:
        marker = "*" if handler_id == assoc.current_handler else " "
        print(f"  {marker} {engine.catalog.handler_name(handler_id)} ({handler_id})")
    return 0


def cmd_set(engine: AssociationEngine, args: argparse.Namespace) -> int:
    kind = _kind_for(args)
    identifiers = [args.identifier] + list(args.more or [])
    if len(identifiers) > 1:
        result = engine.bulk_set_default(kind, identifiers, args.handler)
        return _report_result(result, args.json, "Changed")
    entry = engine.set_default(kind, args.identifier, args.handler)
    if args.json:
        _print_json(entry.to_dict() if entry else {})
    elif entry is not None:
        print(entry.describe())
        if entry.can_undo:
            print(f"Undo with: handlerwatch undo {entry.entry_id}")
    return 0


def cmd_list(engine: AssociationEngine, args: argparse.Namespace) -> int:
    kinds = [AssociationKind(args.kind)] if args.kind else list(AssociationKind)
    associations: List[Association] = []
    for kind in kinds:
        associations.extend(engine.load_associations(kind))
    if args.json:
        _print_json([assoc.to_dict() for assoc in associations])
        return 0
    for assoc in associations:
        print(_format_association(assoc))
    return 0


def cmd_changes(engine: AssociationEngine, args: argparse.Namespace) -> int:
    changes = engine.detect_external_changes()
    if args.json and not (args.revert or args.dismiss):
        _print_json([
            {
                "kind": change.kind.value,
                "identifier": change.identifier,
                "old_handler_id": change.old_handler_id,
                "old_handler_name": change.old_handler_name,
                "new_handler_id": change.new_handler_id,
                "new_handler_name": change.new_handler_name,
            }
            for change in changes
        ])
        return 0
    if not changes:
        if not args.json:
            print("No external changes")
        return 0
    if args.revert:
        return _report_result(engine.revert_all(), args.json, "Reverted")
    if args.dismiss:
        engine.dismiss_all()
        if not args.json:
            print(f"Dismissed {len(changes)} external changes")
        return 0
    for change in changes:
        print(f"{change.display_target():<20} {change.old_handler_name} -> {change.new_handler_name}")
    return 0


def cmd_activity(engine: AssociationEngine, args: argparse.Namespace) -> int:
    if args.clear:
        engine.clear_activity()
        if not args.json:
            print("Activity cleared")
        return 0
    if args.json:
        _print_json([
            _entry_payload(entry, engine.activity.is_undoable(entry)) for entry in engine.list_activity()
        ])
        return 0
    for period, entries in engine.activity_groups():
        print(period)
        for entry in entries:
            marker = "" if engine.activity.is_undoable(entry) else " (not undoable)"
            print(f"  {entry.entry_id[:8]}  {entry.timestamp.strftime(TIME_FORMAT)}  {entry.describe()}{marker}")
    return 0


def _resolve_entry_id(engine: AssociationEngine, prefix: str) -> str:
    matches = [entry.entry_id for entry in engine.list_activity() if entry.entry_id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    return prefix


def cmd_undo(engine: AssociationEngine, args: argparse.Namespace) -> int:
    result = engine.undo(_resolve_entry_id(engine, args.entry_id))
    return _report_result(result, args.json, "Restored")


def cmd_backup(engine: AssociationEngine, args: argparse.Namespace) -> int:
    path = engine.create_backup(args.output)
    if args.json:
        _print_json({"path": path})
    else:
        print(f"Backup written to {path}")
    return 0


def cmd_backups(engine: AssociationEngine, args: argparse.Namespace) -> int:
    infos = engine.list_backups()
    if args.json:
        _print_json([
            {
                "path": info.path,
                "created_at": format_timestamp(info.created_at),
                "os_version": info.os_version,
                "file_types": info.file_types_count,
                "url_schemes": info.schemes_count,
                "size": info.file_size,
            }
            for info in infos
        ])
        return 0
    if not infos:
        print("No backups")
    for info in infos:
        print(
            f"{info.created_at.strftime(TIME_FORMAT)}  {info.file_types_count} files, "
            f"{info.schemes_count} schemes  {info.path}"
        )
    return 0


def cmd_restore(engine: AssociationEngine, args: argparse.Namespace) -> int:
    path = args.path
    if not path:
        latest = engine.latest_backup()
        if latest is None:
            print("No backups to restore", file=sys.stderr)
            return 1
        path = latest.path
    if args.preview:
        diff = engine.preview_restore(path)
        if args.json:
            _print_json([
                {
                    "kind": item.kind.value,
                    "identifier": item.identifier,
                    "current_handler": item.current_handler,
                    "proposed_handler": item.proposed_handler,
                }
                for item in diff
            ])
        elif not diff:
            print("Nothing to restore")
        else:
            for item in diff:
                print(f"{item.kind.display(item.identifier):<20} {item.current_handler or '(none)'} -> {item.proposed_handler}")
        return 0
    result = engine.apply_restore(path)
    if args.json:
        return _report_result(result, True, "Restored")
    print(f"Restored {result.summary()}")
    for (kind, identifier), reason in result.failed.items():
        print(f"  failed {kind.display(identifier)}: {reason}")
    return 0 if result.ok else 1


def cmd_export(engine: AssociationEngine, args: argparse.Namespace) -> int:
    import backups

    associations: List[Association] = []
    for kind in AssociationKind:
        associations.extend(engine.load_associations(kind))
    if args.path.lower().endswith(".xlsx"):
        backups.export_xlsx(args.path, associations, engine.catalog.handler_name)
    else:
        backups.export_csv(args.path, associations, engine.catalog.handler_name)
    if not args.json:
        print(f"Exported {len(associations)} associations to {args.path}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    updates = {key: getattr(args, f"set_{key}") for key in CONFIG_KEYS}
    if any(value is not None for value in updates.values()):
        config = update_config(updates)
    else:
        config = load_config()
    if args.json:
        _print_json(config)
        return 0
    for key in CONFIG_KEYS:
        print(f"{key:<12} {config.get(key, '(default)')}")
    return 0


COMMANDS = {
    "get": cmd_get,
    "set": cmd_set,
    "list": cmd_list,
    "changes": cmd_changes,
    "activity": cmd_activity,
    "undo": cmd_undo,
    "backup": cmd_backup,
    "backups": cmd_backups,
    "restore": cmd_restore,
    "export": cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="handlerwatch", description="Track and undo default app changes.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--data-dir", help="Directory for the snapshot, activity log and backups")
    parser.add_argument("--json", action="store_true", help="Print machine readable output")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd", required=True)

    get = sub.add_parser("get", help="Show the handler for an extension or URL scheme")
    get.add_argument("identifier")
    get.add_argument("--kind", choices=KIND_CHOICES)

    set_cmd = sub.add_parser("set", help="Change the default handler")
    set_cmd.add_argument("identifier")
    set_cmd.add_argument("handler")
    set_cmd.add_argument("more", nargs="*", help="Further identifiers of the same kind")
    set_cmd.add_argument("--kind", choices=KIND_CHOICES)

    list_cmd = sub.add_parser("list", help="List tracked associations")
    list_cmd.add_argument("--kind", choices=KIND_CHOICES)

    changes = sub.add_parser("changes", help="Show handlers changed by other programs")
    action = changes.add_mutually_exclusive_group()
    action.add_argument("--revert", action="store_true")
    action.add_argument("--dismiss", action="store_true")

    activity = sub.add_parser("activity", help="Show recent changes")
    activity.add_argument("--clear", action="store_true")

    undo = sub.add_parser("undo", help="Undo an activity entry")
    undo.add_argument("entry_id")

    backup = sub.add_parser("backup", help="Write a backup of the current handlers")
    backup.add_argument("--output")

    sub.add_parser("backups", help="List backups")

    restore = sub.add_parser("restore", help="Restore handlers from a backup")
    restore.add_argument("path", nargs="?")
    restore.add_argument("--preview", action="store_true")

    export = sub.add_parser("export", help="Export associations to CSV or XLSX")
    export.add_argument("path")

    config = sub.add_parser("config", help="Show or change saved settings")
    config.add_argument("--set-data-dir", metavar="PATH", help="Default data directory; an empty value clears it")
    config.add_argument("--set-backup-dir", metavar="PATH", help="Default backup directory; an empty value clears it")
    config.add_argument("--set-log-level", metavar="LEVEL", help="Logging level such as INFO or DEBUG")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    if args.cmd in ("get", "set") and not normalize_identifier(_kind_for(args), args.identifier):
        parser.error(f"invalid identifier: {args.identifier!r}")
    if args.cmd == "config":
        try:
            return cmd_config(args)
        except HandlerWatchError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
    try:
        registry = create_registry()
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    data_dir = os.path.expanduser(args.data_dir) if args.data_dir else None
    engine = AssociationEngine(registry, data_dir=data_dir)
    try:
        status = COMMANDS[args.cmd](engine, args)
    except HandlerWatchError as exc:
        logger.debug("%s failed", args.cmd, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if args.cmd != "changes" and engine.external_changes:
        # Reported once; the snapshot has already moved past them.
        for change in engine.external_changes:
            print(
                f"External change: {change.display_target()} {change.old_handler_name} -> {change.new_handler_name}",
                file=sys.stderr,
            )
    return status


if __name__ == "__main__":
    raise SystemExit(main())
