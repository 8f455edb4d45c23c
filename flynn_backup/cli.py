"""
Command line entry points.

    flask --app flynn_backup backup -o backup.tar
    flynn-backup -o - > backup.tar
"""

import os

import click
from flask import current_app
from flask.cli import with_appcontext

from flynn_backup.backup.archive import archive_name
from flynn_backup.backup.executor import execute_recorded_backup


OUTPUT_HELP = "Archive path, or '-' for stdout (default: ./flynn-backup-<timestamp>.tar)"
CONFIG_HELP = (
    "Configuration to load (default: FLASK_ENV, else cli). "
    "cli keeps its history database, temp and log files under ./.flynn-backup "
    "(FLYNN_BACKUP_DATA_DIR overrides); production uses /data, which must be writable"
)


def run_backup_command(app, output):
    """
    Run a backup for the CLI and report the result.

    Raises:
        click.ClickException: If the backup failed (exit status 1)
    """
    client = app.extensions['controller']

    if output == '-':
        destination = click.get_binary_stream('stdout')
    else:
        destination = output or f"{archive_name()}.tar"

    run = execute_recorded_backup(client, destination, app.config)

    if run.status != 'success':
        raise click.ClickException(run.error_message or 'backup failed')

    if output != '-':
        size_mb = (run.file_size_bytes or 0) / 1024 / 1024
        click.echo(f"Wrote {destination} ({size_mb:.2f} MB): {', '.join(run.entry_names())}", err=True)


@click.command('backup')
@click.option('-o', '--output', default=None, help=OUTPUT_HELP)
@with_appcontext
def backup_command(output):
    """Back up cluster metadata and databases to a tar archive."""
    run_backup_command(current_app, output)


@click.command()
@click.option('-o', '--output', default=None, help=OUTPUT_HELP)
@click.option(
    '--config', 'config_name',
    type=click.Choice(['cli', 'development', 'production']),
    default=None,
    help=CONFIG_HELP
)
def main(output, config_name):
    """Back up cluster metadata and databases to a tar archive."""
    from flynn_backup import create_app

    app = create_app(config_name or os.environ.get('FLASK_ENV') or 'cli')
    with app.app_context():
        run_backup_command(app, output)
