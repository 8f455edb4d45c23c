"""
Backup module for flynn-backup.

This module handles the core backup functionality including:
- Streaming tar archive construction
- Running dump commands as one-off platform jobs
- Backup orchestration
"""

from .executor import BackupExecutor, run_backup
from .archive import TarWriter, archive_name
from .command import CommandCapture
from .targets import TRACKED_APPS, DUMP_TARGETS

__all__ = [
    'BackupExecutor',
    'run_backup',
    'TarWriter',
    'archive_name',
    'CommandCapture',
    'TRACKED_APPS',
    'DUMP_TARGETS'
]
