"""
Command-line interface for Platebook.

Provides commands for exporting the local restaurant data to a portable
archive, importing such an archive in place of the local data, undoing the
last import, and inspecting backup status.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from concurrent.futures import Future
from datetime import timedelta
from pathlib import Path
from typing import Any, NoReturn

from platebook import __version__
from platebook.backup import (
    ArchiveError,
    BackupService,
    BusyError,
    CancelToken,
    ExportError,
    ImportDataError,
    ImportPhase,
    OperationCancelledError,
    SafetyBackupError,
)
from platebook.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)
from platebook.storage import FileStoreError, SettingsStore, SettingsStoreError

# Set up logging
logger = logging.getLogger(__name__)

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_MANUAL_RECOVERY = 3
EXIT_INTERRUPTED = 130

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    """
    Format a byte count for display.

    Uses 1024-based units with trailing zeros dropped:
    0 -> "0 Bytes", 1536 -> "1.5 KB", 1048576 -> "1 MB".
    """
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    value = round(value, max(decimals, 0))
    return f"{value:g} {units[index]}"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for Platebook CLI."""
    parser = argparse.ArgumentParser(
        prog="platebook",
        description="Back up and restore your Platebook restaurant data",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"platebook {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.platebook/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize Platebook configuration and data directories",
        description="Write a default config file and create the data directories.",
    )
    init_parser.set_defaults(func=cmd_init)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export all data to a backup archive",
        description="Write the database and every photo into a single archive file.",
    )
    export_parser.add_argument(
        "--output",
        "-o",
        metavar="DIR",
        help="Directory for the archive (default: backup.export_dir from config)",
    )
    export_parser.add_argument(
        "--text-safe",
        action="store_true",
        dest="text_safe",
        help="Write the archive as base64 text",
    )
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Replace all data with the contents of a backup archive",
        description=(
            "Import a backup archive. A safety backup of the current data is "
            "taken first and restored automatically if the import fails."
        ),
    )
    import_parser.add_argument(
        "archive",
        metavar="FILE",
        help="Path to a backup archive (.zip or .zip.b64)",
    )
    import_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    import_parser.set_defaults(func=cmd_import)

    # restore-previous command
    restore_parser = subparsers.add_parser(
        "restore-previous",
        help="Undo the last import",
        description="Restore the data saved in the safety backup of the last import.",
    )
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    restore_parser.set_defaults(func=cmd_restore_previous)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show last export, last safety backup and storage use",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Delete expired safety backups",
        description="Remove safety backups older than the retention window.",
    )
    cleanup_parser.add_argument(
        "--hours",
        type=int,
        metavar="N",
        help="Override retention hours (default: from config)",
    )
    cleanup_parser.set_defaults(func=cmd_cleanup)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.ERROR
    elif verbose == 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _build_service(settings: Settings) -> BackupService:
    """Service for a command that opens the data, after launch housekeeping."""
    service = BackupService.from_settings(settings)
    service.run_startup_maintenance()
    return service


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N]: ").strip().lower()
    return response in ("y", "yes")


def _progress_printer() -> Callable[[int], None]:
    """Progress callback that redraws one line on stdout."""

    def show(percent: int) -> None:
        if _quiet_mode:
            return
        end = "\n" if percent >= 100 else ""
        print(f"\r  Progress: {percent:3d}%", end=end, flush=True)

    return show


def _wait(future: Future, cancel: CancelToken) -> Any:
    """
    Wait for a background operation, turning Ctrl-C into a cancellation.

    If the operation has already started replacing live state it finishes
    regardless, and its outcome is returned or raised as usual.
    """
    try:
        return future.result()
    except KeyboardInterrupt:
        output()
        output("Cancelling...")
        cancel.cancel()
        return future.result()


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize Platebook configuration."""
    output("Platebook Initialization")
    output("=" * 50)
    output()

    config_path = Path(args.config) if args.config else get_config_path()
    settings = load_config(config_path)
    if config_path.exists():
        output(f"Configuration already exists: {config_path}")
    else:
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")

    service = BackupService.from_settings(settings)
    try:
        service.files.ensure_app_directories(settings.database_path, settings.images_path)
        service.files.ensure_dir(Path(settings.backup.export_dir))
        service.files.ensure_dir(Path(settings.backup.work_dir))
        SettingsStore(settings.settings_path).initialize()
    except (FileStoreError, SettingsStoreError) as e:
        output_error(f"Error creating data directories: {e}")
        return EXIT_FAILURE

    output()
    output(f"Database:  {settings.database_path}")
    output(f"Images:    {settings.images_path}")
    output(f"Exports:   {settings.backup.export_dir}")
    output()
    output("Initialization complete.")
    return EXIT_OK


def cmd_export(args: argparse.Namespace) -> int:
    """Export all data to a new archive."""
    settings = _load_settings(args)
    service = _build_service(settings)
    if args.output:
        service.export_dir = Path(args.output)
    if args.text_safe:
        service.text_safe = True

    output("Platebook Export")
    output("=" * 50)
    output()

    cancel = CancelToken()
    try:
        future = service.start_export(progress=_progress_printer(), cancel=cancel)
        result = _wait(future, cancel)
    except OperationCancelledError:
        output()
        output("Export cancelled. No archive was written.")
        return EXIT_FAILURE
    except ExportError as e:
        output()
        output_error(f"Export failed: {e}")
        output_error("Your data was not changed. You can try again.")
        return EXIT_FAILURE
    finally:
        service.close()

    output()
    output("Export complete!")
    output()
    output(f"  File:    {result.path}", force=True)
    output(f"  Size:    {format_bytes(result.size_bytes)}")
    output(f"  Photos:  {result.image_count}")
    output(f"  Version: {result.version}")
    output()
    output("To restore from this archive, run:")
    output(f"  platebook import {result.path}")
    return EXIT_OK


def cmd_import(args: argparse.Namespace) -> int:
    """Replace all data with the contents of an archive."""
    archive_path = Path(args.archive)
    if not archive_path.is_file():
        output_error(f"Error: Archive not found: {archive_path}")
        return EXIT_FAILURE

    settings = _load_settings(args)
    service = _build_service(settings)

    output("Platebook Import")
    output("=" * 50)
    output()
    output(f"Archive: {archive_path}")

    try:
        metadata = service.preview_archive(archive_path)
    except (ArchiveError, FileStoreError) as e:
        output_error(f"Error: Not a valid Platebook archive: {e}")
        return EXIT_FAILURE

    output(f"  Exported:    {metadata.exported_at.isoformat()}")
    output(f"  App version: {metadata.version}")
    if metadata.images:
        output(f"  Photos:      {len(metadata.images)}")
    output()

    if not args.force:
        output("WARNING: This will replace ALL current data with the archive contents.")
        output("(A safety backup of the current data is taken first)")
        output()
        if not _confirm("Proceed with import?"):
            output("Import cancelled.")
            return EXIT_OK

    cancel = CancelToken()
    try:
        future = service.start_import(archive_path, progress=_progress_printer(), cancel=cancel)
        result = _wait(future, cancel)
    except OperationCancelledError:
        output()
        output("Import cancelled. Your data was not changed.")
        return EXIT_FAILURE
    except ImportDataError as e:
        output()
        output_error(f"Import failed: {e}")
        if e.requires_manual_recovery:
            location = e.safety_backup.location if e.safety_backup else "unknown"
            output_error("Your data could not be restored automatically.")
            output_error(f"A copy of your previous data is kept in: {location}")
            return EXIT_MANUAL_RECOVERY
        if e.phase is ImportPhase.REPLACED_BUT_ROLLED_BACK:
            output_error("The import was undone; your previous data was restored.")
        else:
            output_error("Your data was not changed.")
        return EXIT_FAILURE
    finally:
        service.close()

    output()
    output("Import complete!")
    output()
    output(f"  Photos restored: {result.image_count}")
    output(f"  Safety backup:   {result.safety_backup.location}")
    output()
    if result.restart_required:
        output("Restart Platebook to load the imported data.", force=True)
    output("To undo this import, run:")
    output("  platebook restore-previous")
    return EXIT_OK


def cmd_restore_previous(args: argparse.Namespace) -> int:
    """Undo the last import from its safety backup."""
    settings = _load_settings(args)
    service = _build_service(settings)

    record = service.last_safety_backup()
    if record is None:
        output_error("No safety backup available to restore.")
        return EXIT_FAILURE

    output("Platebook Restore Previous")
    output("=" * 50)
    output()
    output(f"Safety backup: {record.location}")
    output(f"  Taken: {record.date.isoformat()}")
    output()

    if not args.force:
        output("WARNING: This will replace ALL current data with the safety backup.")
        if not _confirm("Proceed with restore?"):
            output("Restore cancelled.")
            return EXIT_OK

    try:
        result = service.restore_previous()
    except SafetyBackupError as e:
        output_error(f"Restore failed: {e}")
        output_error(f"Your previous data is kept in: {record.location}")
        return EXIT_MANUAL_RECOVERY

    output("Previous data restored.")
    if result.restart_required:
        output("Restart Platebook to load the restored data.", force=True)
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    """Show backup status and storage use."""
    settings = _load_settings(args)
    service = _build_service(settings)

    last_export = service.get_last_export_info()
    safety = service.last_safety_backup()
    interrupted = service.interrupted_import()
    usage = service.storage_usage()

    if args.json:
        data: dict[str, Any] = {
            "version": __version__,
            "database": str(settings.database_path),
            "images": str(settings.images_path),
            "last_export": last_export.to_dict() if last_export else None,
            "last_safety_backup": safety.to_dict() if safety else None,
            "interrupted_import": interrupted is not None,
            "storage": {
                "database_bytes": usage.database_bytes,
                "images_bytes": usage.images_bytes,
                "image_count": usage.image_count,
                "total_bytes": usage.total_bytes,
            },
        }
        output(json.dumps(data, indent=2), force=True)
        return EXIT_OK

    output("Platebook Status")
    output("=" * 50)
    output()

    output("Last export:")
    if last_export is None:
        output("  Never")
    else:
        output(f"  Date:    {last_export.date.isoformat()}")
        output(f"  File:    {last_export.path}")
        output(f"  Size:    {format_bytes(last_export.size_bytes)}")
        output(f"  Version: {last_export.version}")
    output()

    output("Last safety backup:")
    if safety is None:
        output("  None")
    else:
        output(f"  Date:     {safety.date.isoformat()}")
        output(f"  Location: {safety.location}")
        output(f"  Status:   {safety.status.value}")
    output()

    if interrupted is not None:
        output("WARNING: The last import did not finish.")
        output("Run 'platebook restore-previous' to go back to your previous data.")
        output()

    output("Storage used:")
    output(f"  Database: {format_bytes(usage.database_bytes)}")
    output(f"  Photos:   {format_bytes(usage.images_bytes)} ({usage.image_count} files)")
    output(f"  Total:    {format_bytes(usage.total_bytes)}")
    return EXIT_OK


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Delete safety backups past the retention window."""
    settings = _load_settings(args)
    service = BackupService.from_settings(settings)

    hours = args.hours if args.hours is not None else settings.backup.safety_retention_hours
    if hours < 0:
        output_error("Error: --hours must not be negative")
        return EXIT_FAILURE

    interrupted = service.interrupted_import()
    removed = service.safety.purge_expired(
        timedelta(hours=hours),
        keep=interrupted.path if interrupted is not None else None,
    )
    output(f"Removed {removed} safety backup(s) older than {hours} hours.")
    return EXIT_OK


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for Platebook CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_OK)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(EXIT_INTERRUPTED)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG)
    except BusyError as e:
        output_error(f"Error: {e}")
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
