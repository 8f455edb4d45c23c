"""
System apps included in a backup and the databases dumped from them.

Both tables are ordered: apps are resolved and written to the manifest in
TRACKED_APPS order, and dumps are written to the archive in DUMP_TARGETS
order (primary database first).
"""

import shlex
import string
from dataclasses import dataclass
from typing import List, Tuple

from flynn_backup.controller import NewJob, Release


class TargetConfigError(Exception):
    """Raised when a dump command cannot be built from a release."""
    pass


@dataclass(frozen=True)
class TrackedApp:
    name: str
    required: bool = True


@dataclass(frozen=True)
class DumpTarget:
    """
    A database dumped into the archive.

    Placeholders in cmd ({NAME}) are filled from the release env and shell
    quoted. Variables listed in env_keys are passed to the job as env, so
    secrets stay out of the command line.
    """
    entry_name: str
    app_name: str
    cmd: Tuple[str, ...]
    env_keys: Tuple[str, ...] = ()
    entrypoint: Tuple[str, ...] = ('sh',)
    required: bool = True
    disable_log: bool = True

    def build_job(self, release: Release) -> NewJob:
        """
        Build the job that runs this dump.

        Args:
            release: Release of the app owning the database

        Returns:
            NewJob ready to submit

        Raises:
            TargetConfigError: If a connection variable is missing from the release env
        """
        missing = [key for key in self.env_keys + self.placeholders() if key not in release.env]
        if missing:
            raise TargetConfigError(
                f"Release {release.id} of {self.app_name} is missing {', '.join(sorted(set(missing)))}"
            )

        quoted = {key: shlex.quote(release.env[key]) for key in self.placeholders()}
        return NewJob(
            release_id=release.id,
            entrypoint=list(self.entrypoint),
            cmd=[arg.format_map(quoted) for arg in self.cmd],
            env={key: release.env[key] for key in self.env_keys},
            disable_log=self.disable_log
        )

    def placeholders(self) -> Tuple[str, ...]:
        names = []
        for arg in self.cmd:
            for _, name, _, _ in string.Formatter().parse(arg):
                if name and name not in names:
                    names.append(name)
        return tuple(names)


TRACKED_APPS: List[TrackedApp] = [
    TrackedApp('postgres', required=True),
    TrackedApp('mariadb', required=False),
    TrackedApp('discoverd', required=True),
    TrackedApp('flannel', required=True),
    TrackedApp('controller', required=True),
]

DUMP_TARGETS: List[DumpTarget] = [
    DumpTarget(
        entry_name='postgres.sql.gz',
        app_name='postgres',
        cmd=('-c', 'set -o pipefail; pg_dumpall --clean --if-exists | gzip -9'),
        env_keys=('PGHOST', 'PGUSER', 'PGPASSWORD'),
        required=True
    ),
    DumpTarget(
        entry_name='mysql.sql.gz',
        app_name='mariadb',
        cmd=('-c', 'set -o pipefail; /usr/bin/mysqldump -h {MYSQL_HOST} -u {MYSQL_USER} --all-databases | gzip -9'),
        env_keys=('MYSQL_PWD',),
        required=False
    ),
]
