"""
Backup history routes - View past backup runs.
"""

from flask import Blueprint, jsonify, request

from flynn_backup import db
from flynn_backup.models import BackupRun
from flynn_backup.auth import auth_required


bp = Blueprint('history', __name__, url_prefix='/api/history')

STATUSES = ['running', 'success', 'failed']


def _format_run(record, include_logs=False):
    duration_seconds = None
    if record.completed_at:
        duration = record.completed_at - record.started_at
        duration_seconds = int(duration.total_seconds())

    data = {
        'id': record.id,
        'status': record.status,
        'archive_name': record.archive_name,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'duration_seconds': duration_seconds,
        'file_size_bytes': record.file_size_bytes,
        'file_size_mb': round(record.file_size_bytes / 1024 / 1024, 2) if record.file_size_bytes else None,
        'entries': record.entry_names(),
        'error_message': record.error_message,
    }
    if include_logs:
        data['logs'] = record.logs
    else:
        data['has_logs'] = bool(record.logs)
    return data


@bp.route('/', methods=['GET'])
@auth_required
def list_history():
    """
    Get backup run history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 50
    if offset < 0:
        offset = 0

    query = BackupRun.query

    if status_filter:
        if status_filter not in STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    total_count = query.count()

    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_format_run(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
@auth_required
def get_history_detail(run_id):
    """
    Get a single backup run including its logs.

    Args:
        run_id: Backup run ID

    Returns:
        JSON with full run record
    """
    record = db.get_or_404(BackupRun, run_id)
    return jsonify(_format_run(record, include_logs=True))
