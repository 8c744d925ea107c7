"""
Backup history routes - Read-only JSON view of run history.
"""

from datetime import datetime, timedelta, timezone

from flask import Blueprint, jsonify, request

from strongbox import db
from strongbox.models import BackupRun


bp = Blueprint('history', __name__, url_prefix='/api/history')

RUN_STATUSES = ['running', 'success', 'partial', 'failed', 'cancelled']


def _iso(value):
    # Timestamps are stored as naive UTC
    return value.replace(tzinfo=timezone.utc).isoformat() if value else None


def _backend_data(result):
    return {
        'backend': result.backend_name,
        'type': result.backend_type,
        'status': result.status,
        'location': result.location,
        'chunks': result.chunks,
        'pruned': result.pruned,
        'prune_error': result.prune_error,
        'error_message': result.error_message
    }


def _run_data(record):
    return {
        'id': record.id,
        'model_name': record.model_name,
        'run_id': record.run_id,
        'status': record.status,
        'state': record.state,
        'started_at': _iso(record.started_at),
        'completed_at': _iso(record.completed_at),
        'total_bytes': record.total_bytes,
        'total_mb': round(record.total_bytes / 1024 / 1024, 2) if record.total_bytes else None,
        'checksum': record.checksum,
        'error_message': record.error_message,
        'backends': [_backend_data(r) for r in record.backend_results]
    }


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/partial/failed/cancelled)
        - model: Filter by model name
        - days: Only show backups from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    model_filter = request.args.get('model')
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if model_filter:
        query = query.filter(BackupRun.model_name == model_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupRun.started_at >= cutoff_date)

    # Get total count before pagination
    total_count = query.count()

    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_run_data(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_history_detail(run_id):
    """
    Get detailed information for a specific run, including logs.

    Args:
        run_id: BackupRun record ID
    """
    record = db.get_or_404(BackupRun, run_id)

    duration_seconds = None
    if record.completed_at:
        duration_seconds = int((record.completed_at - record.started_at).total_seconds())

    data = _run_data(record)
    data['duration_seconds'] = duration_seconds
    data['logs'] = record.logs
    return jsonify(data)


@bp.route('/stats', methods=['GET'])
def get_history_stats():
    """
    Get summary statistics for backup history.

    Query params:
        - days: Calculate summary for last N days (default: 30, max: 365)
    """
    days = request.args.get('days', 30, type=int)
    if days < 1:
        days = 30
    if days > 365:
        days = 365

    cutoff_date = datetime.utcnow() - timedelta(days=days)
    query = BackupRun.query.filter(BackupRun.started_at >= cutoff_date)

    counts = {status: query.filter(BackupRun.status == status).count() for status in RUN_STATUSES}
    completed = counts['success'] + counts['partial'] + counts['failed']
    success_rate = round((counts['success'] / completed * 100) if completed > 0 else 0, 1)

    recent = BackupRun.query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).first()
    recent_info = None
    if recent:
        recent_info = {
            'model_name': recent.model_name,
            'status': recent.status,
            'started_at': _iso(recent.started_at)
        }

    return jsonify({
        'days': days,
        'total_backups': query.count(),
        'running': counts['running'],
        'successful': counts['success'],
        'partial': counts['partial'],
        'failed': counts['failed'],
        'cancelled': counts['cancelled'],
        'success_rate': success_rate,
        'most_recent': recent_info
    })
