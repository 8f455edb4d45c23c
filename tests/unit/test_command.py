"""
Unit tests for remote command capture (flynn_backup/backup/command.py).
"""

from unittest.mock import MagicMock

import pytest

from conftest import FakeAttachedJob, stdout, stderr, exit_frame, error_frame
from flynn_backup.backup.command import (
    CommandCapture,
    JobError,
    JobStartError,
    JobExecutionError,
    JobCancelledError,
    JobStatus
)
from flynn_backup.controller import ControllerError, NewJob, StreamTimeoutError


def make_client(frames, job_id='job-1'):
    client = MagicMock()
    attached = FakeAttachedJob(job_id, frames)
    client.run_job_attached.return_value = attached
    return client, attached


def make_job():
    return NewJob(
        release_id='release-1',
        entrypoint=['sh'],
        cmd=['-c', 'pg_dumpall | gzip -9'],
        env={'PGPASSWORD': 'secret'}
    )


class TestRunAndCapture:
    """Test starting jobs."""

    def test_submits_job_with_logging_disabled(self):
        """Test the job is submitted with disable_log set."""
        client, _ = make_client([exit_frame(0)])
        job = make_job()

        CommandCapture(client).run_and_capture('app-1', job)

        client.run_job_attached.assert_called_once_with('app-1', job, read_timeout=None)
        assert client.run_job_attached.call_args[0][1].disable_log is True

    def test_start_failure_raises_job_start_error(self):
        """Test a controller error on creation raises JobStartError."""
        client = MagicMock()
        client.run_job_attached.side_effect = ControllerError('no hosts available', status_code=500)

        with pytest.raises(JobStartError, match='no hosts available'):
            CommandCapture(client).run_and_capture('app-1', make_job())

    def test_output_is_lazy(self):
        """Test no frames are read until the output is iterated."""
        client, attached = make_client([RuntimeError('should not be read')])

        output = CommandCapture(client).run_and_capture('app-1', make_job())

        assert output.status is JobStatus.RUNNING
        assert not attached.closed


class TestJobOutput:
    """Test reading job output."""

    def test_successful_output(self):
        """Test stdout chunks are yielded in order and the job succeeds."""
        client, attached = make_client([stdout(b'abc'), stdout(b'def'), exit_frame(0)])

        with CommandCapture(client).run_and_capture('app-1', make_job()) as output:
            chunks = list(output)

        assert chunks == [b'abc', b'def']
        assert output.status is JobStatus.SUCCEEDED
        assert output.exit_code == 0
        assert attached.closed
        client.delete_job.assert_not_called()

    def test_stderr_interleaved_by_default(self):
        """Test stderr is interleaved with stdout when no handler is given."""
        client, _ = make_client([stdout(b'1'), stderr(b'warn'), stdout(b'2'), exit_frame(0)])

        output = CommandCapture(client).run_and_capture('app-1', make_job())

        assert list(output) == [b'1', b'warn', b'2']

    def test_stderr_handler(self):
        """Test stderr goes to the handler and is kept out of the output."""
        client, _ = make_client([stdout(b'1'), stderr(b'warn'), stdout(b'2'), exit_frame(0)])
        received = []

        output = CommandCapture(client).run_and_capture('app-1', make_job(), stderr=received.append)

        assert list(output) == [b'1', b'2']
        assert received == [b'warn']

    def test_non_zero_exit(self):
        """Test a non-zero exit raises JobExecutionError after the output."""
        client, _ = make_client([stdout(b'partial'), exit_frame(1)])
        output = CommandCapture(client).run_and_capture('app-1', make_job())
        chunks = []

        with pytest.raises(JobExecutionError, match='status 1') as exc_info:
            for chunk in output:
                chunks.append(chunk)

        assert chunks == [b'partial']
        assert exc_info.value.exit_code == 1
        assert output.status is JobStatus.FAILED

        # The job has exited, there is nothing to stop
        output.close()
        client.delete_job.assert_not_called()

    def test_stream_ends_without_exit_status(self):
        """Test an interrupted stream is treated as a failed job."""
        client, _ = make_client([stdout(b'partial')])

        with pytest.raises(JobExecutionError, match='without an exit status') as exc_info:
            with CommandCapture(client).run_and_capture('app-1', make_job()) as output:
                list(output)

        assert exc_info.value.exit_code is None
        assert output.status is JobStatus.FAILED
        client.delete_job.assert_called_once_with('app-1', 'job-1')

    def test_connection_drop(self):
        """Test a transport error mid-stream raises JobExecutionError."""
        client, attached = make_client([stdout(b'partial'), ControllerError('connection reset')])

        with pytest.raises(JobExecutionError, match='connection reset'):
            with CommandCapture(client).run_and_capture('app-1', make_job()) as output:
                list(output)

        assert attached.closed
        client.delete_job.assert_called_once()

    def test_error_frame(self):
        """Test an error frame from the controller fails the job."""
        client, _ = make_client([error_frame('container exited unexpectedly')])

        with pytest.raises(JobExecutionError, match='container exited unexpectedly'):
            list(CommandCapture(client).run_and_capture('app-1', make_job()))

    def test_malformed_exit_frame(self):
        """Test an exit frame with a bad payload fails the job."""
        client, _ = make_client([(3, b'\x00')])

        with pytest.raises(JobExecutionError, match='Malformed exit frame'):
            list(CommandCapture(client).run_and_capture('app-1', make_job()))

    def test_output_not_restartable(self):
        """Test output can only be iterated once."""
        client, _ = make_client([stdout(b'x'), exit_frame(0)])
        output = CommandCapture(client).run_and_capture('app-1', make_job())
        list(output)

        with pytest.raises(JobError, match='already been read'):
            iter(output)


class TestCancellation:
    """Test stopping jobs that have not finished."""

    def test_cancellation_check_stops_job(self):
        """Test a raising cancellation check aborts reading and stops the job."""
        client, attached = make_client([stdout(b'1'), stdout(b'2'), exit_frame(0)])
        calls = []

        def check():
            calls.append(1)
            if len(calls) > 1:
                raise JobCancelledError('timed out')

        with pytest.raises(JobCancelledError, match='timed out'):
            with CommandCapture(client).run_and_capture('app-1', make_job(), cancellation_check=check) as output:
                list(output)

        assert attached.closed
        assert output.status is JobStatus.RUNNING
        client.delete_job.assert_called_once_with('app-1', 'job-1')

    def test_read_timeout_passed_to_controller(self):
        """Test the read timeout is applied to the attached stream."""
        client, _ = make_client([exit_frame(0)])
        job = make_job()

        CommandCapture(client).run_and_capture('app-1', job, read_timeout=30)

        client.run_job_attached.assert_called_once_with('app-1', job, read_timeout=30)

    def test_silent_job_is_cancelled(self):
        """Test a stream timing out while the job is silent cancels and stops the job."""
        client, attached = make_client([StreamTimeoutError('Attached stream timed out: read timed out')])

        with pytest.raises(JobCancelledError, match='produced no output') as exc_info:
            with CommandCapture(client).run_and_capture('app-1', make_job(), read_timeout=1) as output:
                list(output)

        assert exc_info.value.exit_code is None
        assert output.status is JobStatus.FAILED
        assert attached.closed
        client.delete_job.assert_called_once_with('app-1', 'job-1')

    def test_close_unread_output_stops_job(self):
        """Test closing output that was never read stops the job."""
        client, attached = make_client([stdout(b'1'), exit_frame(0)])

        output = CommandCapture(client).run_and_capture('app-1', make_job())
        output.close()
        output.close()

        assert attached.closed
        client.delete_job.assert_called_once_with('app-1', 'job-1')

    def test_stop_failure_is_not_raised(self):
        """Test a failure stopping the job is logged, not raised."""
        client, _ = make_client([stdout(b'1'), exit_frame(0)])
        client.delete_job.side_effect = ControllerError('controller unavailable')

        output = CommandCapture(client).run_and_capture('app-1', make_job())
        output.close()

        client.delete_job.assert_called_once()
