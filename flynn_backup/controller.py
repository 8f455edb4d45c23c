"""
HTTP client for the platform controller.

Only the calls needed to describe system apps and run one-off jobs are
implemented. Attached job output is a framed binary stream:

    [type: 1 byte][length: 4 bytes, big-endian][payload]

Frame types: 1 stdout, 2 stderr, 3 exit (4-byte big-endian status),
4 error (UTF-8 message).
"""

import logging
import socket
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

import requests
import urllib3


logger = logging.getLogger(__name__)

ATTACH_MEDIA_TYPE = 'application/vnd.flynn.attach'
JOB_ID_HEADER = 'Flynn-Job-ID'

FRAME_STDOUT = 1
FRAME_STDERR = 2
FRAME_EXIT = 3
FRAME_ERROR = 4

_FRAME_HEADER = struct.Struct('>BI')
_EXIT_STATUS = struct.Struct('>i')


class ControllerError(Exception):
    """Raised when a controller request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ControllerError):
    """Raised when the controller has no such object."""
    pass


class StreamTimeoutError(ControllerError):
    """Raised when an attached stream stays silent past its read timeout."""
    pass


T = TypeVar('T')


@dataclass
class App:
    id: str
    name: str
    meta: Dict[str, str] = field(default_factory=dict)
    strategy: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'App':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            meta=data.get('meta') or {},
            strategy=data.get('strategy')
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'id': self.id, 'name': self.name}
        if self.meta:
            data['meta'] = dict(self.meta)
        if self.strategy:
            data['strategy'] = self.strategy
        return data


@dataclass
class Release:
    id: str
    artifact_id: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    processes: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Release':
        return cls(
            id=data['id'],
            artifact_id=data.get('artifact'),
            env=data.get('env') or {},
            processes=data.get('processes') or {},
            meta=data.get('meta') or {}
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'id': self.id, 'env': dict(self.env), 'processes': dict(self.processes)}
        if self.artifact_id:
            data['artifact'] = self.artifact_id
        if self.meta:
            data['meta'] = dict(self.meta)
        return data


@dataclass
class Artifact:
    id: str
    type: str = ''
    uri: str = ''
    meta: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Artifact':
        return cls(
            id=data['id'],
            type=data.get('type', ''),
            uri=data.get('uri', ''),
            meta=data.get('meta') or {}
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'id': self.id, 'type': self.type, 'uri': self.uri}
        if self.meta:
            data['meta'] = dict(self.meta)
        return data


@dataclass
class Formation:
    app_id: str
    release_id: str
    processes: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Formation':
        return cls(
            app_id=data.get('app', ''),
            release_id=data.get('release', ''),
            processes=data.get('processes') or {}
        )


@dataclass
class ExpandedFormation:
    app: App
    release: Release
    artifact: Artifact
    processes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'app': self.app.to_dict(),
            'release': self.release.to_dict(),
            'artifact': self.artifact.to_dict(),
            'processes': dict(self.processes)
        }


@dataclass
class NewJob:
    release_id: str
    entrypoint: List[str] = field(default_factory=list)
    cmd: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    disable_log: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'release': self.release_id,
            'entrypoint': list(self.entrypoint),
            'cmd': list(self.cmd),
            'env': dict(self.env),
            'disable_log': self.disable_log
        }


class AttachedJob:
    """
    A running job with its output stream attached.

    Iterating frames() yields (frame_type, payload) tuples until the
    controller closes the stream.
    """

    def __init__(self, job_id: str, response: requests.Response):
        self.job_id = job_id
        self.response = response

    def frames(self) -> Iterator[Tuple[int, bytes]]:
        """
        Yield decoded frames from the attached stream.

        Raises:
            ControllerError: If the stream ends in the middle of a frame
        """
        raw = self.response.raw
        while True:
            header = _read_exact(raw, _FRAME_HEADER.size, allow_eof=True)
            if header is None:
                return
            frame_type, length = _FRAME_HEADER.unpack(header)
            payload = _read_exact(raw, length) if length else b''
            yield frame_type, payload

    def close(self):
        self.response.close()


def decode_exit_status(payload: bytes) -> int:
    """Decode the payload of an exit frame."""
    if len(payload) != _EXIT_STATUS.size:
        raise ControllerError(f"Malformed exit frame ({len(payload)} bytes)")
    return _EXIT_STATUS.unpack(payload)[0]


def _read_exact(raw, size: int, allow_eof: bool = False) -> Optional[bytes]:
    chunks = []
    remaining = size
    while remaining > 0:
        try:
            chunk = raw.read(remaining)
        except (urllib3.exceptions.TimeoutError, requests.Timeout, socket.timeout) as e:
            raise StreamTimeoutError(f"Attached stream timed out: {e}") from e
        except (urllib3.exceptions.HTTPError, requests.RequestException, OSError) as e:
            # urllib3 reports dropped connections (IncompleteRead) as ProtocolError
            raise ControllerError(f"Attached stream interrupted: {e}") from e
        if not chunk:
            if allow_eof and remaining == size:
                return None
            raise ControllerError("Attached stream ended mid-frame")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


class ControllerClient:
    """
    Client for the platform controller API.

    Authenticates with HTTP basic auth (empty username, controller key as
    password).
    """

    def __init__(self, url: str, key: str = '', timeout: float = 30):
        """
        Initialize controller client.

        Args:
            url: Controller base URL
            key: Controller auth key
            timeout: Timeout in seconds for metadata requests
        """
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = ('', key)
        self.session.headers['Accept'] = 'application/json'

    @classmethod
    def from_config(cls, config) -> 'ControllerClient':
        return cls(
            config['CONTROLLER_URL'],
            key=config.get('CONTROLLER_KEY', ''),
            timeout=config.get('CONTROLLER_TIMEOUT', 30)
        )

    def get_app(self, name: str) -> App:
        return self._get_object(f"/apps/{name}", App.from_dict)

    def get_app_release(self, app_id: str) -> Release:
        return self._get_object(f"/apps/{app_id}/release", Release.from_dict)

    def get_formation(self, app_id: str, release_id: str) -> Formation:
        return self._get_object(f"/apps/{app_id}/formations/{release_id}", Formation.from_dict)

    def get_artifact(self, artifact_id: str) -> Artifact:
        return self._get_object(f"/artifacts/{artifact_id}", Artifact.from_dict)

    def run_job_attached(
        self,
        app_id: str,
        job: NewJob,
        read_timeout: Optional[float] = None
    ) -> AttachedJob:
        """
        Create a job and attach to its output in the same request.

        Args:
            app_id: App the job runs under
            job: Job specification
            read_timeout: Longest silence allowed on the attached stream
                (None waits forever, dumps can be silent for a long time)

        Returns:
            AttachedJob streaming the job's output frames

        Raises:
            ControllerError: If the job could not be created
        """
        url = f"{self.url}/apps/{app_id}/jobs"
        try:
            response = self.session.post(
                url,
                json=job.to_dict(),
                headers={'Accept': ATTACH_MEDIA_TYPE},
                stream=True,
                timeout=(self.timeout, read_timeout)
            )
        except requests.RequestException as e:
            raise ControllerError(f"POST {url} failed: {e}") from e

        if not response.ok:
            message = _error_message(response)
            response.close()
            raise ControllerError(
                f"POST {url} failed ({response.status_code}): {message}",
                status_code=response.status_code
            )

        job_id = response.headers.get(JOB_ID_HEADER, '')
        logger.debug(f"Attached to job {job_id or '<unknown>'} for app {app_id}")
        return AttachedJob(job_id, response)

    def delete_job(self, app_id: str, job_id: str):
        """Stop a running job."""
        self._request('DELETE', f"/apps/{app_id}/jobs/{job_id}")

    def _get_object(self, path: str, decode: Callable[[Dict[str, Any]], T]) -> T:
        data = self._get_json(path)
        if not isinstance(data, dict):
            raise ControllerError(f"GET {path} returned {type(data).__name__}, expected an object")
        try:
            return decode(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ControllerError(f"GET {path} returned a malformed object: {e!r}") from e

    def _get_json(self, path: str) -> Any:
        response = self._request('GET', path)
        try:
            return response.json()
        except ValueError as e:
            raise ControllerError(f"GET {path} returned invalid JSON: {e}") from e

    def _request(self, method: str, path: str) -> requests.Response:
        url = f"{self.url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ControllerError(f"{method} {url} failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"{method} {url}: not found", status_code=404)
        if not response.ok:
            raise ControllerError(
                f"{method} {url} failed ({response.status_code}): {_error_message(response)}",
                status_code=response.status_code
            )
        return response


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason or ''
    if isinstance(body, dict) and body.get('message'):
        return body['message']
    return response.reason or ''
