"""
Remote command execution for backup dumps.

Runs a one-off job on the platform and exposes its output as an iterable of
byte chunks. The job is created and attached in a single request, so output
produced before the first read is not lost.
"""

import enum
import logging
from typing import Callable, Iterator, Optional

from flynn_backup.controller import (
    ControllerError,
    NewJob,
    StreamTimeoutError,
    FRAME_STDOUT,
    FRAME_STDERR,
    FRAME_EXIT,
    FRAME_ERROR,
    decode_exit_status,
)


logger = logging.getLogger(__name__)


class JobError(Exception):
    """Raised when a remote job cannot produce its output."""
    pass


class JobStartError(JobError):
    """Raised when the platform refuses or fails to start a job."""
    pass


class JobExecutionError(JobError):
    """Raised when a job exits non-zero or its output stream is cut short."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class JobCancelledError(JobExecutionError):
    """Raised when a running job is cancelled by the caller."""
    pass


class JobStatus(enum.Enum):
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    FAILED_TO_START = 'failed_to_start'


class JobOutput:
    """
    Output of one attached job.

    Iterate once to receive the job's output. The iterator raises
    JobExecutionError after the last chunk if the job did not exit cleanly.
    Use as a context manager so an unfinished job is stopped on exit.
    """

    def __init__(
        self,
        client,
        app_id: str,
        attached,
        stderr: Optional[Callable[[bytes], None]] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        self.client = client
        self.app_id = app_id
        self.job_id = attached.job_id
        self.status = JobStatus.RUNNING
        self.exit_code = None
        self._attached = attached
        self._stderr = stderr
        self._cancellation_check = cancellation_check
        self._consumed = False
        self._released = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __iter__(self) -> Iterator[bytes]:
        if self._consumed:
            raise JobError(f"Output of job {self.job_id} has already been read")
        self._consumed = True
        return self._chunks()

    def _chunks(self) -> Iterator[bytes]:
        frames = self._attached.frames()
        try:
            while True:
                if self._cancellation_check:
                    self._cancellation_check()

                try:
                    frame = next(frames, None)
                except StreamTimeoutError as e:
                    self._fail(None)
                    raise JobCancelledError(f"Job {self.job_id} produced no output: {e}") from e
                except ControllerError as e:
                    self._fail(None)
                    raise JobExecutionError(f"Job {self.job_id} output interrupted: {e}") from e
                if frame is None:
                    break

                frame_type, payload = frame
                if frame_type == FRAME_STDOUT:
                    yield payload
                elif frame_type == FRAME_STDERR:
                    if self._stderr is None:
                        yield payload
                    else:
                        self._stderr(payload)
                elif frame_type == FRAME_EXIT:
                    try:
                        self.exit_code = decode_exit_status(payload)
                    except ControllerError as e:
                        self._fail(None)
                        raise JobExecutionError(f"Job {self.job_id}: {e}") from e
                    break
                elif frame_type == FRAME_ERROR:
                    self._fail(None)
                    raise JobExecutionError(
                        f"Job {self.job_id} failed: {payload.decode('utf-8', 'replace')}"
                    )
                else:
                    logger.debug(f"Ignoring unknown frame type {frame_type} from job {self.job_id}")
        finally:
            # A job abandoned mid-stream is stopped by close()
            self._attached.close()

        if self.exit_code is None:
            self._fail(None)
            raise JobExecutionError(f"Job {self.job_id} output ended without an exit status")
        if self.exit_code != 0:
            self._fail(self.exit_code)
            raise JobExecutionError(
                f"Job {self.job_id} exited with status {self.exit_code}",
                exit_code=self.exit_code
            )

        self.status = JobStatus.SUCCEEDED
        self._released = True

    def close(self):
        """
        Release the job.

        A job that is still running (output not fully read, cancelled, or
        interrupted) is asked to stop.
        """
        if self._released:
            return
        self._released = True

        if self.status is JobStatus.RUNNING or self.exit_code is None:
            try:
                self.client.delete_job(self.app_id, self.job_id)
                logger.info(f"Stopped job {self.job_id}")
            except ControllerError as e:
                logger.warning(f"Failed to stop job {self.job_id}: {e}")
        self._attached.close()

    def _fail(self, exit_code: Optional[int]):
        self.status = JobStatus.FAILED
        self.exit_code = exit_code


class CommandCapture:
    """
    Runs commands as one-off platform jobs and captures their output.
    """

    def __init__(self, client):
        """
        Initialize command capture.

        Args:
            client: Controller client used to create and stop jobs
        """
        self.client = client

    def run_and_capture(
        self,
        app_id: str,
        job: NewJob,
        stderr: Optional[Callable[[bytes], None]] = None,
        cancellation_check: Optional[Callable[[], None]] = None,
        read_timeout: Optional[float] = None
    ) -> JobOutput:
        """
        Start a job and attach to its output.

        Log persistence is always disabled for captured jobs: their output
        contains credentials and dumped rows.

        Args:
            app_id: App the job runs under
            job: Job specification
            stderr: Receives stderr chunks; if None, stderr is interleaved
                with stdout in the returned output
            cancellation_check: Called before each read; may raise to abort
            read_timeout: Seconds a single read may block before the job
                is cancelled (None waits forever)

        Returns:
            JobOutput to iterate for the job's output

        Raises:
            JobStartError: If the job could not be started
        """
        job.disable_log = True

        try:
            attached = self.client.run_job_attached(app_id, job, read_timeout=read_timeout)
        except ControllerError as e:
            raise JobStartError(f"Failed to start job: {e}") from e

        logger.info(f"Started job {attached.job_id or '<unknown>'} ({' '.join(job.entrypoint)})")
        return JobOutput(
            self.client,
            app_id,
            attached,
            stderr=stderr,
            cancellation_check=cancellation_check
        )
