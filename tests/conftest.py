"""
Shared pytest fixtures for flynn-backup tests.

This module provides fixtures for:
- Flask app, test client and CLI runner with in-memory SQLite
- An in-memory fake of the controller API
- Helpers for building attached job output frames
"""

import struct

import pytest

from flynn_backup import create_app, db as _db
from flynn_backup.controller import (
    App,
    Artifact,
    AttachedJob,
    Formation,
    NotFoundError,
    Release,
    FRAME_STDOUT,
    FRAME_STDERR,
    FRAME_EXIT,
    FRAME_ERROR,
)


def stdout(data: bytes):
    return (FRAME_STDOUT, data)


def stderr(data: bytes):
    return (FRAME_STDERR, data)


def exit_frame(status: int):
    return (FRAME_EXIT, struct.pack('>i', status))


def error_frame(message: str):
    return (FRAME_ERROR, message.encode())


class FakeAttachedJob(AttachedJob):
    """
    Attached job replaying a fixed list of frames.

    An Exception instance in the list is raised when reached.
    """

    def __init__(self, job_id, frames):
        self.job_id = job_id
        self._frames = list(frames)
        self.closed = False

    def frames(self):
        for frame in self._frames:
            if isinstance(frame, Exception):
                raise frame
            yield frame

    def close(self):
        self.closed = True


class FakeController:
    """
    In-memory controller.

    Apps are registered with add_app(); job output per app name is set in
    job_frames. Submitted jobs and stop requests are recorded.
    """

    def __init__(self):
        self.apps = {}
        self.releases = {}
        self.artifacts = {}
        self.formations = {}
        self.job_frames = {}
        self.job_start_errors = {}
        self.jobs = []
        self.attached = []
        self.deleted = []
        self.read_timeouts = []

    def add_app(self, name, env=None, processes=None):
        app = App(id=f"{name}-id", name=name, meta={'flynn-system-app': 'true'})
        release = Release(
            id=f"{name}-release",
            artifact_id=f"{name}-artifact",
            env=dict(env or {}),
            processes={'app': {'cmd': [name]}}
        )
        self.apps[name] = app
        self.releases[app.id] = release
        self.artifacts[release.artifact_id] = Artifact(
            id=release.artifact_id,
            type='docker',
            uri=f"https://registry.example.com/{name}?id=sha256:{name}"
        )
        self.formations[(app.id, release.id)] = Formation(
            app_id=app.id,
            release_id=release.id,
            processes=dict(processes or {'app': 1})
        )
        return app

    def get_app(self, name):
        if name not in self.apps:
            raise NotFoundError(f"GET /apps/{name}: not found", status_code=404)
        return self.apps[name]

    def get_app_release(self, app_id):
        return self.releases[app_id]

    def get_formation(self, app_id, release_id):
        return self.formations[(app_id, release_id)]

    def get_artifact(self, artifact_id):
        return self.artifacts[artifact_id]

    def run_job_attached(self, app_id, job, read_timeout=None):
        name = app_id[:-len('-id')]
        self.jobs.append((app_id, job))
        self.read_timeouts.append(read_timeout)
        if name in self.job_start_errors:
            raise self.job_start_errors[name]
        attached = FakeAttachedJob(f"{name}-job-{len(self.jobs)}", self.job_frames.get(name, [exit_frame(0)]))
        self.attached.append(attached)
        return attached

    def delete_job(self, app_id, job_id):
        self.deleted.append((app_id, job_id))


POSTGRES_ENV = {
    'PGHOST': 'leader.postgres.discoverd',
    'PGUSER': 'flynn',
    'PGPASSWORD': 's3cret',
}

MARIADB_ENV = {
    'MYSQL_HOST': 'leader.mariadb.discoverd',
    'MYSQL_USER': 'flynn',
    'MYSQL_PWD': 'also-s3cret',
}


@pytest.fixture
def controller():
    """
    Fake controller with every required system app and no mariadb.

    postgres dumps to b'postgres-dump' and exits 0.
    """
    fake = FakeController()
    fake.add_app('postgres', env=POSTGRES_ENV, processes={'postgres': 3, 'web': 2})
    fake.add_app('discoverd', processes={'app': 3})
    fake.add_app('flannel', processes={'app': 3})
    fake.add_app('controller', processes={'web': 1, 'scheduler': 1, 'worker': 2})
    fake.job_frames['postgres'] = [stdout(b'postgres-'), stdout(b'dump'), exit_frame(0)]
    return fake


@pytest.fixture
def controller_with_mariadb(controller):
    """Fake controller that also runs mariadb; it dumps to b'mysql-dump'."""
    controller.add_app('mariadb', env=MARIADB_ENV, processes={'mariadb': 3})
    controller.job_frames['mariadb'] = [stdout(b'mysql-dump'), exit_frame(0)]
    return controller


@pytest.fixture(scope='function')
def app(tmp_path, controller):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and the fake controller.
    """
    app = create_app('development', overrides={
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'SPILL_THRESHOLD': 1024,
        'BACKUP_AUTH_KEY': None,
    })
    app.extensions['controller'] = controller

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables, inside an app context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()
