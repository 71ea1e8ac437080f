"""Command line entry point for syncing Hypothes.is highlights into an Obsidian vault."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from hypothesis_highlights.config import HISTORY_FILE, SETTINGS_FILE, SettingsStore
from hypothesis_highlights.errors import HighlightSyncError, TemplateSyntaxError
from hypothesis_highlights.history import HistoryStore
from hypothesis_highlights.renderer import unknown_fields, validate
from hypothesis_highlights.service import SyncService
from hypothesis_highlights.sync import SyncResult, SyncStatus


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", type=Path, help="Path to the JSON settings file", default=SETTINGS_FILE)
    parser.add_argument("--history", type=Path, help="Path to the JSON sync history file", default=HISTORY_FILE)
    parser.add_argument("--vault", type=Path, help="Path to the root of the Obsidian vault", default=None)
    parser.add_argument("--subdir", help="Folder inside the vault for new highlight files", default=None)
    parser.add_argument("--workers", type=int, default=1, help="Number of files written in parallel")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress and debugging details")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("sync", help="Sync new highlights (default)")
    commands.add_parser("boot", help="Sync only if sync-on-boot is enabled")
    commands.add_parser("status", help="Show connection and sync totals")
    connect = commands.add_parser("connect", help="Store and verify an API token")
    connect.add_argument("token")
    commands.add_parser("disconnect", help="Forget the API token (history is kept)")
    commands.add_parser("reset", help="Wipe sync history to allow for a full resync")
    commands.add_parser("deleted", help="List synced files that were deleted locally")
    resync = commands.add_parser("resync", help="Recreate deleted files")
    resync.add_argument("documents", nargs="+", help="Document URIs as listed by 'deleted'")
    forget = commands.add_parser("keep-deleted", help="Never recreate these deleted files")
    forget.add_argument("documents", nargs="+", help="Document URIs as listed by 'deleted'")
    template = commands.add_parser("template", help="Validate or set the highlights template")
    template.add_argument("action", choices=["validate", "set", "show"])
    template.add_argument("file", type=Path, nargs="?")
    folder = commands.add_parser("folder", help="Set the vault folder for new highlight files")
    folder.add_argument("name")
    commands.add_parser("folders", help="List folders of the vault")
    date_format = commands.add_parser("date-format", help="Set the strftime date/time format")
    date_format.add_argument("format")
    boot = commands.add_parser("sync-on-boot", help="Enable or disable syncing at startup")
    boot.add_argument("state", choices=["on", "off"])
    return parser.parse_args(argv)


def _build_service(args: argparse.Namespace) -> SyncService:
    overrides = {
        "vault_root": str(args.vault) if args.vault is not None else None,
        "highlights_folder": args.subdir,
    }
    return SyncService(
        SettingsStore(args.config, overrides=overrides),
        HistoryStore(args.history),
        workers=max(1, args.workers),
    )


def _report(result: SyncResult) -> int:
    if result.status in (SyncStatus.FAILED, SyncStatus.CANCELLED):
        reason = result.error or "unknown error"
        print(f"Sync failed: {reason}", file=sys.stderr)
        print("Sync history was left unchanged.", file=sys.stderr)
        return 1

    for document_id in result.created:
        print(f"Created {result.history.documents[document_id].path}")
    for document_id in result.updated:
        print(f"Updated {result.history.documents[document_id].path}")
    for document_id in result.pending_deletion:
        print(f"Deleted locally, not recreated: {result.history.documents[document_id].path}")
    for document_id, reason in sorted(result.failed.items()):
        print(f"Failed {document_id}: {reason}", file=sys.stderr)

    print(
        f"Sync complete: {result.annotations_fetched} annotation(s) fetched, "
        f"{result.files_written} file(s) written."
    )
    if result.pending_deletion:
        print("Run 'deleted' to resync or forget files removed from the vault.")
    return 0 if result.status is SyncStatus.SUCCESS else 1


def _read_template(path: Optional[Path]) -> str:
    if path is None:
        raise SystemExit("A template file is required for this action.")
    try:
        return path.expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise SystemExit(f"Failed to read template file: {exc}") from exc


def _template(service: SyncService, args: argparse.Namespace) -> int:
    if args.action == "show":
        print(service.settings_store.load().template, end="")
        return 0

    text = _read_template(args.file)
    try:
        validate(text)
    except TemplateSyntaxError as exc:
        print(f"Invalid template: {exc}", file=sys.stderr)
        return 1
    for name in unknown_fields(text):
        print(f"Warning: '{name}' is not a known field and will render empty.")
    if args.action == "set":
        service.set_template(text)
        print("Template saved.")
    else:
        print("Template is valid.")
    return 0


def _run(service: SyncService, args: argparse.Namespace) -> int:
    command = args.command or "sync"

    if command == "sync":
        return _report(service.start_sync())
    if command == "boot":
        result = service.startup()
        if result is None:
            print("Sync on boot is disabled or no API token is configured.")
            return 0
        return _report(result)
    if command == "status":
        status = service.status()
        if status.connected:
            print(f"Connected to Hypothes.is as {status.username or 'unknown user'}")
        else:
            print("Not connected to Hypothes.is")
        print(f"{status.total_documents} article(s) & {status.total_highlights} highlight(s) synced")
        print(f"Last sync {status.last_sync_date}" if status.last_sync_date else "Sync has never run")
        if status.pending_deletion:
            print(f"{status.pending_deletion} file(s) deleted locally await a decision")
        return 0
    if command == "connect":
        settings = service.connect(args.token)
        print(f"Connected as {settings.user}")
        return 0
    if command == "disconnect":
        service.disconnect()
        print("API token removed.")
        return 0
    if command == "reset":
        service.reset_sync_history()
        print("Sync history wiped; the next sync fetches everything again.")
        return 0
    if command == "deleted":
        missing = service.deleted_files()
        if not missing:
            print("No deleted files.")
        for item in missing:
            print(f"{item.document_id}\t{item.path}\t{item.highlights} highlight(s)")
        return 0
    if command == "resync":
        return _report(service.resync_deleted(args.documents))
    if command == "keep-deleted":
        service.keep_deleted(args.documents)
        print(f"{len(args.documents)} document(s) will not be recreated.")
        return 0
    if command == "template":
        return _template(service, args)
    if command == "folder":
        settings = service.set_highlights_folder(args.name)
        print(f"New highlight files go to '{settings.highlights_folder or '/'}'.")
        return 0
    if command == "folders":
        for name in service.list_folders():
            print(name)
        return 0
    if command == "date-format":
        service.set_date_format(args.format)
        print("Date format saved.")
        return 0
    if command == "sync-on-boot":
        service.set_sync_on_boot(args.state == "on")
        print(f"Sync on boot {'enabled' if args.state == 'on' else 'disabled'}.")
        return 0
    raise SystemExit(f"Unknown command: {command}")


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(list(argv) if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    service = _build_service(args)
    try:
        return _run(service, args)
    except HighlightSyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:  # pragma: no cover - user error
        print(f"Failed to read or write settings: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
