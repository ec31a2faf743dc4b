"""
Platebook - personal restaurant, dish and visit tracker.

This package holds the local data layer of Platebook and its backup and
restore engine.

Key Features:
    - Portable single-file archives of the whole local state
      (SQLite database + photos + metadata)
    - Safe import with a pre-import safety backup and automatic rollback
    - Progress reporting for long-running export and import operations
    - Durable bookkeeping of the last export and the last safety backup

Design Principles:
    - Local only: export/import is the only data portability mechanism
    - Nothing destructive happens before a safety copy exists
    - The core returns values and raises typed errors; prompting the user
      and restarting the app are left to the caller
"""

__version__ = "1.2.0"
__author__ = ""
__email__ = ""

from platebook.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
