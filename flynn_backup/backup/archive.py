"""
Streaming tar writer for backup archives.

Every entry is nested under a single top-level directory named after the
archive (see archive_name()). Entries are emitted strictly in order, and a
header is only written once the full entry body is available:

- write_json: structured metadata, length known up front
- write_stream: output of a running process, buffered into a spill file
  (memory first, then temporary disk) before the header is emitted
"""

import io
import json
import logging
import os
import posixpath
import tarfile
import tempfile
import time
from datetime import datetime, timezone
from typing import Any, BinaryIO, Iterable, List, Optional, Tuple


logger = logging.getLogger(__name__)

# 64MB held in memory before spilling to disk
DEFAULT_SPILL_THRESHOLD = 64 * 1024 * 1024


class ArchiveError(Exception):
    """Raised when the archive cannot be built."""
    pass


class EncodingError(ArchiveError):
    """Raised when a structured entry cannot be serialized."""
    pass


class WriteError(ArchiveError):
    """Raised when the archive sink rejects a write."""
    pass


class SourceError(ArchiveError):
    """Raised when a streamed entry's source fails before it is exhausted."""
    pass


def archive_name(now: Optional[datetime] = None) -> str:
    """
    Generate the top-level directory name shared by every entry.

    Format: flynn-backup-{YYYY-MM-DD_HHMMSS} (UTC)

    Args:
        now: Timestamp to use (default: current UTC time)

    Returns:
        Archive base name
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"flynn-backup-{now.strftime('%Y-%m-%d_%H%M%S')}"


class TarWriter:
    """
    Writes a tar stream to a sink, one complete entry at a time.

    The sink only needs a write() method; it is never seeked, so stdout and
    HTTP response bodies work as well as regular files.
    """

    def __init__(
        self,
        base_name: str,
        sink: BinaryIO,
        spill_threshold: int = DEFAULT_SPILL_THRESHOLD,
        temp_dir: Optional[str] = None,
        close_sink: bool = False
    ):
        """
        Open a new archive.

        Args:
            base_name: Top-level directory prefixed to every entry name
            sink: Writable binary file object receiving the tar stream
            spill_threshold: Bytes of streamed entry held in memory before
                spilling to a temporary file
            temp_dir: Directory for spill files (default: system temp dir)
            close_sink: Close the sink when the archive is closed

        Raises:
            WriteError: If the sink cannot accept writes
        """
        if getattr(sink, 'closed', False):
            raise WriteError("Archive sink is closed")
        writable = getattr(sink, 'writable', None)
        if writable is not None and not writable():
            raise WriteError("Archive sink is not writable")

        self.base_name = base_name
        self.sink = sink
        self.spill_threshold = spill_threshold
        self.temp_dir = temp_dir
        self.close_sink = close_sink
        self.entries: List[Tuple[str, int]] = []

        self._uid = os.getuid() if hasattr(os, 'getuid') else 0
        self._gid = os.getgid() if hasattr(os, 'getgid') else 0
        self._mtime = time.time()
        self._writing = False
        self._broken = False
        self._closed = False

        self._tar = tarfile.open(fileobj=sink, mode='w|', format=tarfile.PAX_FORMAT)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        # Don't let a trailer failure mask the original error
        if exc_type is None:
            self.close()
        else:
            try:
                self.close()
            except ArchiveError as e:
                logger.warning(f"Failed to close archive {self.base_name}: {e}")
        return False

    @property
    def closed(self) -> bool:
        return self._closed

    def entry_path(self, name: str) -> str:
        """Return the full in-archive path for an entry name."""
        return posixpath.join(self.base_name, name)

    def write_json(self, name: str, value: Any):
        """
        Write a structured entry as indented, key-sorted JSON.

        Args:
            name: Entry name (relative to the archive directory)
            value: JSON-serializable value

        Raises:
            EncodingError: If value cannot be serialized
            WriteError: If the sink write fails
        """
        self._begin(name)
        try:
            try:
                data = json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False)
                data = (data + '\n').encode('utf-8')
            except (TypeError, ValueError) as e:
                raise EncodingError(f"Failed to encode {name}: {e}") from e

            self._emit(name, len(data), io.BytesIO(data))
        finally:
            self._writing = False

    def write_stream(self, name: str, source: Iterable[bytes]):
        """
        Write an entry whose content is produced incrementally.

        The source is drained into a spill buffer first; the header is only
        emitted once the source has completed without error, so a failing
        source never leaves a partial entry in the archive.

        Args:
            name: Entry name (relative to the archive directory)
            source: Iterable of byte chunks

        Raises:
            SourceError: If the source raises before it is exhausted
            WriteError: If buffering or the sink write fails
        """
        self._begin(name)
        try:
            with tempfile.SpooledTemporaryFile(
                max_size=self.spill_threshold,
                mode='w+b',
                dir=self.temp_dir
            ) as buffer:
                length = self._drain(name, source, buffer)
                buffer.seek(0)
                self._emit(name, length, buffer)
        finally:
            self._writing = False

    def close(self):
        """
        Write the archive trailer and release the sink.

        Safe to call more than once, and after a failed write.

        Raises:
            WriteError: If the trailer cannot be written
        """
        if self._closed:
            return
        self._closed = True

        try:
            if self._broken:
                # The stream is already inconsistent, don't append a trailer to it
                logger.debug(f"Releasing broken archive {self.base_name} without trailer")
            else:
                try:
                    self._tar.close()
                except OSError as e:
                    self._broken = True
                    raise WriteError(f"Failed to finalize archive: {e}") from e
        finally:
            if self.close_sink:
                try:
                    self.sink.close()
                except OSError as e:
                    logger.warning(f"Failed to close archive sink: {e}")

    def _begin(self, name: str):
        if self._closed:
            raise WriteError(f"Cannot write {name}: archive is closed")
        if self._broken:
            raise WriteError(f"Cannot write {name}: archive stream is broken")
        if self._writing:
            raise WriteError(f"Cannot write {name}: another entry is still being written")
        self._writing = True

    def _drain(self, name: str, source: Iterable[bytes], buffer) -> int:
        length = 0
        chunks = iter(source)

        while True:
            try:
                chunk = next(chunks)
            except StopIteration:
                break
            except Exception as e:
                raise SourceError(f"Failed to read {name}: {e}") from e

            if not chunk:
                continue

            try:
                buffer.write(chunk)
            except OSError as e:
                raise WriteError(f"Failed to buffer {name}: {e}") from e
            length += len(chunk)

        return length

    def _emit(self, name: str, length: int, body: BinaryIO):
        info = tarfile.TarInfo(self.entry_path(name))
        info.type = tarfile.REGTYPE
        info.mode = 0o644
        info.size = length
        info.mtime = self._mtime
        info.uid = self._uid
        info.gid = self._gid

        try:
            self._tar.addfile(info, body)
        except OSError as e:
            self._broken = True
            raise WriteError(f"Failed to write {name} to archive: {e}") from e

        self.entries.append((name, length))
        logger.debug(f"Wrote archive entry {info.name} ({length} bytes)")
