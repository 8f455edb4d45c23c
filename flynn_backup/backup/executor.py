"""
Backup executor - orchestrates a complete cluster backup.

Workflow:
1. Resolve app, release, formation and artifact for each tracked app
2. Open the archive and write the manifest (flynn.json)
3. Run each database dump as a one-off job, streaming it into the archive
4. Close the archive

Any failure aborts the run; the archive produced by an aborted run must be
discarded. Only a missing optional app is tolerated, and only while
resolving: once an optional database is in the manifest, a failure dumping
it is as fatal as for the primary database.
"""

import enum
import logging
import os
import tempfile
import time
from collections.abc import Mapping
from datetime import datetime
from types import MappingProxyType
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple, Union

from flynn_backup import db
from flynn_backup.models import BackupRun
from flynn_backup.controller import ControllerError, ExpandedFormation
from .archive import TarWriter, ArchiveError, SourceError, archive_name, DEFAULT_SPILL_THRESHOLD
from .command import CommandCapture, JobError, JobCancelledError
from .targets import TRACKED_APPS, DUMP_TARGETS, TrackedApp, DumpTarget, TargetConfigError


logger = logging.getLogger(__name__)

MANIFEST_NAME = 'flynn.json'


class BackupError(Exception):
    """Raised when a backup run is aborted."""
    pass


class AppLookupError(BackupError):
    """Raised when app details cannot be resolved."""

    def __init__(self, name: str, cause: Exception, stage: str = 'app details'):
        super().__init__(f"error getting {name} {stage}: {cause}")
        self.name = name
        self.cause = cause
        self.stage = stage


class RequiredAppError(AppLookupError):
    """Raised when a required app cannot be found."""
    pass


class DumpError(BackupError):
    """Raised when a database dump fails."""

    def __init__(self, store: str, cause: Exception):
        super().__init__(f"error dumping {store} database: {cause}")
        self.store = store
        self.cause = cause


class DumpState(enum.Enum):
    PENDING = 'pending'
    DUMPING = 'dumping'
    DUMPED = 'dumped'
    FAILED = 'failed'


class Manifest(Mapping):
    """Read-only mapping of app name to its expanded formation."""

    def __init__(self, formations: Dict[str, ExpandedFormation]):
        self._formations = MappingProxyType(dict(formations))

    def __getitem__(self, name: str) -> ExpandedFormation:
        return self._formations[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._formations)

    def __len__(self) -> int:
        return len(self._formations)

    def to_dict(self) -> Dict[str, dict]:
        return {name: formation.to_dict() for name, formation in self._formations.items()}


def resolve_apps(client, tracked_apps: List[TrackedApp] = None, log=None) -> Manifest:
    """
    Look up the details of every tracked app.

    Args:
        client: Controller client
        tracked_apps: Apps to resolve (default: TRACKED_APPS)
        log: Optional callable receiving progress messages

    Returns:
        Manifest of the apps that were found

    Raises:
        RequiredAppError: If a required app cannot be found
        AppLookupError: If an app exists but its release, formation or
            artifact cannot be fetched
    """
    if tracked_apps is None:
        tracked_apps = TRACKED_APPS
    log = log or logger.info

    formations = {}
    for tracked in tracked_apps:
        try:
            app = client.get_app(tracked.name)
        except ControllerError as e:
            if tracked.required:
                raise RequiredAppError(tracked.name, e) from e
            # Optional apps are left out of the backup entirely
            log(f"Optional app {tracked.name} not available, excluding it from backup")
            continue

        try:
            stage = 'app release'
            release = client.get_app_release(app.id)
            stage = 'app formation'
            formation = client.get_formation(app.id, release.id)
            stage = 'app artifact'
            artifact = client.get_artifact(release.artifact_id)
        except ControllerError as e:
            raise AppLookupError(tracked.name, e, stage) from e

        formations[tracked.name] = ExpandedFormation(
            app=app,
            release=release,
            artifact=artifact,
            processes=formation.processes
        )
        log(f"Resolved {tracked.name} (release {release.id})")

    return Manifest(formations)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow.
    """

    def __init__(
        self,
        client,
        tracked_apps: Optional[List[TrackedApp]] = None,
        dump_targets: Optional[List[DumpTarget]] = None,
        spill_threshold: int = DEFAULT_SPILL_THRESHOLD,
        temp_dir: Optional[str] = None,
        job_timeout: Optional[float] = None
    ):
        """
        Initialize backup executor.

        Args:
            client: Controller client
            tracked_apps: Apps included in the manifest (default: TRACKED_APPS)
            dump_targets: Databases to dump, in archive order (default: DUMP_TARGETS)
            spill_threshold: Bytes of each dump buffered in memory before spilling to disk
            temp_dir: Directory for spill files
            job_timeout: Seconds allowed per dump job (None or 0 for no limit)
        """
        self.client = client
        self.capture = CommandCapture(client)
        self.tracked_apps = tracked_apps if tracked_apps is not None else TRACKED_APPS
        self.dump_targets = dump_targets if dump_targets is not None else DUMP_TARGETS
        self.spill_threshold = spill_threshold
        self.temp_dir = temp_dir
        self.job_timeout = job_timeout or None

        self.archive_name = None
        self.manifest = None
        self.entries: List[Tuple[str, int]] = []
        self.states: Dict[str, DumpState] = {
            target.entry_name: DumpState.PENDING for target in self.dump_targets
        }
        self.logs = []

    @classmethod
    def from_config(cls, client, config) -> 'BackupExecutor':
        return cls(
            client,
            spill_threshold=config.get('SPILL_THRESHOLD', DEFAULT_SPILL_THRESHOLD),
            temp_dir=config.get('TEMP_DIR'),
            job_timeout=config.get('JOB_TIMEOUT')
        )

    def execute(self, out: BinaryIO, name: Optional[str] = None) -> List[Tuple[str, int]]:
        """
        Run the backup, writing the archive to out.

        Args:
            out: Writable binary sink for the tar stream
            name: Archive base name (default: timestamped flynn-backup name)

        Returns:
            List of (entry name, size) written to the archive

        Raises:
            BackupError: If an app cannot be resolved or a dump fails
            ArchiveError: If the manifest cannot be written or the archive
                cannot be finalized
        """
        self.archive_name = name or archive_name()
        self._log(f"Starting backup {self.archive_name}")

        try:
            self._execute_workflow(out)
        except Exception as e:
            self._log(f"Backup failed: {e}")
            raise

        total = sum(size for _, size in self.entries)
        self._log(f"Backup completed: {len(self.entries)} entries ({total / 1024 / 1024:.2f} MB)")
        return self.entries

    def execute_to_file(self, path: str, name: Optional[str] = None) -> List[Tuple[str, int]]:
        """
        Run the backup into a file.

        The archive is written to a temporary file next to path and only
        moved into place once the run has succeeded, so an aborted run never
        leaves a file at path.

        Args:
            path: Destination archive path
            name: Archive base name

        Returns:
            List of (entry name, size) written to the archive
        """
        directory = os.path.dirname(os.path.abspath(path))
        fd, temp_path = tempfile.mkstemp(prefix='.flynn-backup-', suffix='.partial', dir=directory)

        try:
            with os.fdopen(fd, 'wb') as out:
                entries = self.execute(out, name)
            os.replace(temp_path, path)
            return entries
        except BaseException:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError as e:
                    logger.warning(f"Failed to remove partial archive {temp_path}: {e}")
            raise

    def _execute_workflow(self, out: BinaryIO):
        """Execute the main backup workflow steps."""
        # Step 1: Resolve apps before touching the sink
        self._log("Resolving app details")
        self.manifest = resolve_apps(self.client, self.tracked_apps, log=self._log)

        with TarWriter(
            self.archive_name,
            out,
            spill_threshold=self.spill_threshold,
            temp_dir=self.temp_dir
        ) as writer:
            self.entries = writer.entries

            # Step 2: Manifest
            writer.write_json(MANIFEST_NAME, self.manifest.to_dict())
            self._log(f"Wrote {MANIFEST_NAME} ({len(self.manifest)} apps)")

            # Step 3: Dumps, strictly one at a time
            for target in self.dump_targets:
                self._dump(writer, target)

    def _dump(self, writer: TarWriter, target: DumpTarget):
        formation = self.manifest.get(target.app_name)
        if formation is None:
            self._log(f"{target.app_name} not present, skipping {target.entry_name}")
            return

        kind = 'required' if target.required else 'optional'
        self._log(f"Dumping {target.app_name} ({kind}) to {target.entry_name}")
        self.states[target.entry_name] = DumpState.DUMPING

        try:
            job = target.build_job(formation.release)
            output = self.capture.run_and_capture(
                formation.app.id,
                job,
                stderr=self._stderr_logger(target),
                cancellation_check=self._deadline_check(target),
                read_timeout=self.job_timeout
            )
            with output:
                writer.write_stream(target.entry_name, output)
        except (TargetConfigError, JobError, ArchiveError) as e:
            self.states[target.entry_name] = DumpState.FAILED
            cause = e
            # Report the job failure rather than the archive's wrapper around it
            if isinstance(e, SourceError) and isinstance(e.__cause__, JobError):
                cause = e.__cause__
            raise DumpError(target.app_name, cause) from e

        self.states[target.entry_name] = DumpState.DUMPED
        size = writer.entries[-1][1]
        self._log(f"Dumped {target.app_name} ({size / 1024 / 1024:.2f} MB)")

    def _stderr_logger(self, target: DumpTarget):
        def log_stderr(data: bytes):
            for line in data.decode('utf-8', 'replace').splitlines():
                if line.strip():
                    self._log(f"{target.app_name}: {line}")
        return log_stderr

    def _deadline_check(self, target: DumpTarget):
        if not self.job_timeout:
            return None

        deadline = time.monotonic() + self.job_timeout

        def check():
            if time.monotonic() > deadline:
                raise JobCancelledError(
                    f"{target.entry_name} dump exceeded {self.job_timeout:g}s timeout"
                )
        return check

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def run_backup(client, out: BinaryIO, **kwargs) -> List[Tuple[str, int]]:
    """
    Write a complete backup of the cluster to out.

    Args:
        client: Controller client
        out: Writable binary sink
        **kwargs: Passed to BackupExecutor

    Returns:
        List of (entry name, size) written to the archive
    """
    return BackupExecutor(client, **kwargs).execute(out)


def execute_recorded_backup(client, destination: Union[str, BinaryIO], config) -> BackupRun:
    """
    Run a backup and record it as a BackupRun.

    Failures are recorded on the returned run (status 'failed') rather than
    raised. Requires an application context.

    Args:
        client: Controller client
        destination: Archive path, or a writable binary stream
        config: Application config

    Returns:
        BackupRun with execution results
    """
    executor = BackupExecutor.from_config(client, config)
    run = BackupRun(status='running', started_at=datetime.utcnow())
    db.session.add(run)
    db.session.commit()

    try:
        if isinstance(destination, str):
            entries = executor.execute_to_file(destination)
            run.file_size_bytes = os.path.getsize(destination)
        else:
            entries = executor.execute(destination)
            destination.flush()
        run.status = 'success'
        run.entries = ','.join(name for name, _ in entries)
    except (BackupError, ArchiveError, OSError) as e:
        run.status = 'failed'
        run.error_message = str(e)
    finally:
        if run.status == 'running':
            run.status = 'failed'
            run.error_message = 'Backup interrupted'
        run.archive_name = executor.archive_name
        run.completed_at = datetime.utcnow()
        run.logs = '\n'.join(executor.logs)
        db.session.commit()

    return run
