"""
Backup routes - Download a fresh cluster backup.
"""

import os
import tempfile

from flask import Blueprint, current_app, jsonify, send_file

from flynn_backup.auth import auth_required
from flynn_backup.backup.archive import archive_name
from flynn_backup.backup.executor import execute_recorded_backup


bp = Blueprint('backup', __name__)


@bp.route('/backup', methods=['GET'])
@auth_required
def download_backup():
    """
    Run a backup and send the resulting archive.

    The archive is only sent once the whole run has succeeded, so a client
    never receives a truncated backup.

    Returns:
        application/x-tar attachment, or JSON error with status 500
    """
    client = current_app.extensions['controller']

    temp_dir = current_app.config['TEMP_DIR']
    fd, path = tempfile.mkstemp(prefix='backup-', suffix='.tar', dir=temp_dir)
    os.close(fd)

    run = execute_recorded_backup(client, path, current_app.config)

    if run.status != 'success':
        if os.path.exists(path):
            os.remove(path)
        current_app.logger.error(f"Backup {run.id} failed: {run.error_message}")
        return jsonify({'error': run.error_message, 'run_id': run.id}), 500

    response = send_file(
        path,
        mimetype='application/x-tar',
        as_attachment=True,
        download_name=f"{run.archive_name or archive_name()}.tar"
    )
    response.headers['X-Backup-Run-ID'] = str(run.id)

    logger = current_app.logger

    def remove_archive():
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")

    response.call_on_close(remove_archive)
    return response
