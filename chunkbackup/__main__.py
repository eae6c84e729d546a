#!/usr/bin/env python3
"""
Command-line interface entry point for the chunkbackup package.

This module allows the package to be executed as a script using:
python -m chunkbackup
"""

import sys
from typing import List, Optional

from .cli import main
from .errors import BackupError, CatalogError, EngineShutdownError


def run(argv: Optional[List[str]] = None) -> int:
    """
    Run the command line interface and turn escaped errors into exit codes.

    Returns:
        int: 0 on success, 1 for backup failures, 2 for an unreadable catalog,
            130 when interrupted
    """
    try:
        main(argv)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except EngineShutdownError:
        print("\nBackup engine stopped before all changes were stored", file=sys.stderr)
        return 1
    except CatalogError as e:
        print(f"\nCatalog error: {e}", file=sys.stderr)
        return 2
    except BackupError as e:
        print(f"\nBackup error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(run())
