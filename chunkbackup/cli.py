import argparse
import sys
import signal
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import List, NoReturn, Optional

from .chunker import DEFAULT_CHUNK_SIZE
from .errors import BackupError
from .operations import DEFAULT_REFRESH_INTERVAL, BackupEngine
from .restore import RestoreEngine
from .watcher import DEFAULT_SCAN_INTERVAL, ChangeCoordinator, PollingNotifier


logger = logging.getLogger('chunkbackup')

USAGE_EXAMPLES = """
Usage examples:
  Start backup monitoring (watch mode):
    chunkbackup --watch /path/to/watch --backup /path/to/backup --refresh 60

  Restore from backup:
    chunkbackup --restore --backup /path/to/backup --target /path/to/restore

  List files in backup:
    chunkbackup --list --backup /path/to/backup

  Verify backup integrity:
    chunkbackup --verify --backup /path/to/backup
"""


def format_mtime(mtime_ns: int) -> str:
    """
    Convert a nanosecond modification time to a readable local timestamp.

    Args:
        mtime_ns (int): Modification time in nanoseconds since the epoch

    Returns:
        str: Timestamp in format YYYY-MM-DD HH:MM:SS
    """
    return datetime.fromtimestamp(mtime_ns / 1_000_000_000).strftime("%Y-%m-%d %H:%M:%S")


def print_error_and_exit(error_message: str, exit_code: int = 1) -> NoReturn:
    """
    Print an error message and exit the program with the specified exit code.

    Args:
        error_message (str): The error message to display
        exit_code (int, optional): The exit code to use. Defaults to 1.
    """
    logger.error(error_message)
    print(f"Error: {error_message}", file=sys.stderr)
    sys.exit(exit_code)


def watch_command(args: argparse.Namespace) -> None:
    """
    Watch a directory and back it up continuously until interrupted.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - watch: Directory to watch
            - backup: Backup destination
            - refresh: Seconds between full backups
            - scan_interval: Seconds between watcher scans
            - poll: Poll directories instead of using native file system events
            - chunk_size: Chunk size bound in bytes
    """
    watch_dir = Path(args.watch)
    if not watch_dir.is_dir():
        print_error_and_exit(f"Watch path '{watch_dir}' does not exist or is not a directory")

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Shutdown signal {signum} received")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(f"Starting backup of '{args.watch}' into '{args.backup}', refresh every {args.refresh}s")
    try:
        with BackupEngine(args.watch, args.backup, chunk_size=args.chunk_size) as engine:
            engine.initialize()
            notifier = PollingNotifier() if args.poll else None
            with ChangeCoordinator(notifier=notifier, scan_interval=args.scan_interval,
                                   exclude=args.backup) as coordinator:
                coordinator.add_watch(args.watch)
                engine.start()
                coordinator.start()

                print("Performing initial full backup...")
                try:
                    result = engine.perform_full_backup()
                    print(f"Initial backup complete: {len(result.files_backed_up)} files in "
                          f"{len(result.chunk_ids)} chunks.")
                except BackupError as e:
                    logger.warning(f"Initial backup failed: {str(e)}")
                    print(f"Warning: initial backup failed: {e}", file=sys.stderr)

                print("Backup system started. Press Ctrl+C to stop.")
                engine.watch(coordinator, refresh_interval=args.refresh, stop_event=stop_event)
        print("Backup system stopped.")
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except BackupError as e:
        print_error_and_exit(f"Backup failed: {str(e)}")
    except PermissionError as e:
        print_error_and_exit(f"Permission denied: {str(e)}")
    except OSError as e:
        print_error_and_exit(f"OS error: {str(e)}")


def restore_command(args: argparse.Namespace) -> None:
    """
    Restore every live file of a backup into the target directory.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - backup: Backup destination
            - target: Directory to restore into
    """
    try:
        logger.info("Starting restore operation")
        engine = RestoreEngine(args.backup, args.target)
        engine.initialize()
        result = engine.restore_all()
    except FileNotFoundError as e:
        print_error_and_exit(f"File not found: {str(e)}")
    except PermissionError as e:
        print_error_and_exit(f"Permission denied: {str(e)}")
    except BackupError as e:
        print_error_and_exit(f"Error restoring backup: {str(e)}")
    except OSError as e:
        print_error_and_exit(f"OS error: {str(e)}")

    print(f"Restored {len(result.restored)} files to {args.target}")
    if result.missing_chunks:
        print(f"Missing chunk files: {', '.join(result.missing_chunks)}")
    if result.failed:
        print(f"Failed to restore {len(result.failed)} files:")
        for path, reason in sorted(result.failed.items()):
            print(f"  - {path}: {reason}")
        sys.exit(1)


def list_command(args: argparse.Namespace) -> None:
    """
    Print every tracked file with its status, size and modification time.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - backup: Backup destination
    """
    try:
        engine = RestoreEngine(args.backup)
        engine.initialize()
        records = engine.list_files()
        chunks = engine.catalog.chunks()
    except FileNotFoundError as e:
        print_error_and_exit(f"File not found: {str(e)}")
    except BackupError as e:
        print_error_and_exit(f"Error listing backup: {str(e)}")

    print(f"Backup created: {engine.catalog.created_at}")
    print(f"Last updated: {engine.catalog.updated_at}")
    print(f"Total chunks: {len(chunks)}")
    print()

    if not records:
        print("No files found.")
        return

    print(f"{'STATUS':<9}{'SIZE':>12}  {'MODIFIED':<20} PATH")
    active = 0
    for record in records:
        status = "DELETED" if record.deleted else "ACTIVE"
        if not record.deleted:
            active += 1
        print(f"{status:<9}{record.size:>12}  {format_mtime(record.mtime_ns):<20} {record.path}")

    print()
    print(f"Summary: {active} active files, {len(records) - active} deleted files")


def verify_command(args: argparse.Namespace) -> None:
    """
    Check that every chunk referenced by the catalog is present.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - backup: Backup destination
    """
    try:
        engine = RestoreEngine(args.backup)
        engine.initialize()
        ok, summary = engine.verify()
    except FileNotFoundError as e:
        print_error_and_exit(f"File not found: {str(e)}")
    except BackupError as e:
        print_error_and_exit(f"Error verifying backup: {str(e)}")

    print(summary)
    if ok:
        print("Backup verification completed successfully!")
    else:
        logger.warning("Backup verification failed")
        print("\nBackup verification FAILED.")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chunkbackup",
        description="Continuous incremental backup with chunked, compressed storage",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--watch", help="Directory to watch for changes (watch mode)")
    parser.add_argument("--backup", help="Directory to store backup files")
    parser.add_argument("--target", help="Target directory (restore mode only)")
    parser.add_argument("--restore", action="store_true", help="Restore all files from the backup")
    parser.add_argument("--list", action="store_true", help="List files in the backup")
    parser.add_argument("--verify", action="store_true", help="Verify backup integrity")
    parser.add_argument(
        "--refresh",
        type=float,
        default=DEFAULT_REFRESH_INTERVAL,
        help="Seconds between full backups in watch mode"
    )
    parser.add_argument(
        "--scan-interval",
        type=float,
        default=DEFAULT_SCAN_INTERVAL,
        help="Seconds between watcher scans of every watched directory"
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Maximum raw chunk size in bytes"
    )
    parser.add_argument(
        "--poll",
        action="store_true",
        help="Detect changes by polling, for file systems without native change events"
    )
    parser.add_argument("--log-file", default="chunkbackup.log", help="Path to the log file")
    parser.add_argument("--verbose", action="store_true", help="Log debug messages")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for the command line interface.
    Parses arguments, checks that exactly one mode is selected and dispatches.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=args.log_file,
        filemode='a'
    )

    def usage_error(message: str) -> NoReturn:
        print(f"Error: {message}", file=sys.stderr)
        parser.print_help(sys.stderr)
        print(USAGE_EXAMPLES, file=sys.stderr)
        sys.exit(1)

    if not args.backup:
        usage_error("--backup path is required")

    modes = [name for name, selected in (
        ("watch", bool(args.watch)),
        ("restore", args.restore),
        ("list", args.list),
        ("verify", args.verify),
    ) if selected]

    if not modes:
        usage_error("You must specify one operation mode")
    if len(modes) > 1:
        usage_error("Only one operation mode can be specified at a time")
    if args.restore and not args.target:
        usage_error("--target path is required for restore mode")
    if args.chunk_size <= 0:
        usage_error("--chunk-size must be positive")
    if args.refresh <= 0 or args.scan_interval <= 0:
        usage_error("--refresh and --scan-interval must be positive")

    command_handlers = {
        "watch": watch_command,
        "restore": restore_command,
        "list": list_command,
        "verify": verify_command,
    }
    command_handlers[modes[0]](args)


if __name__ == "__main__":
    main()
