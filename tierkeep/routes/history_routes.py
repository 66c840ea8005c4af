"""
Transfer history routes - View and manage backup execution history.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required
from datetime import datetime, timedelta

from tierkeep import db
from tierkeep.models import TransferHistory


bp = Blueprint('history', __name__, url_prefix='/api/history')

STATUSES = ['running', 'success', 'partial', 'failed']


@bp.route('/', methods=['GET'])
@login_required
def list_history():
    """
    Get transfer history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/partial/failed)
        - site_id: Filter by site ID
        - days: Only show transfers from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    site_id_filter = request.args.get('site_id', type=int)
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = TransferHistory.query

    if status_filter:
        if status_filter not in STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(TransferHistory.status == status_filter)

    if site_id_filter:
        query = query.filter(TransferHistory.site_id == site_id_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(TransferHistory.started_at >= cutoff_date)

    total_count = query.count()

    records = query.order_by(
        TransferHistory.started_at.desc()
    ).limit(limit).offset(offset).all()

    history_data = []
    for record in records:
        data = record.to_dict()
        data['has_logs'] = bool(record.logs)
        history_data.append(data)

    return jsonify({
        'records': history_data,
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:history_id>', methods=['GET'])
@login_required
def get_history_detail(history_id):
    """
    Get a history record including its run log.

    Args:
        history_id: Transfer history record ID
    """
    record = db.get_or_404(TransferHistory, history_id)
    data = record.to_dict()
    data['logs'] = record.logs
    return jsonify(data)


@bp.route('/summary', methods=['GET'])
@login_required
def get_history_summary():
    """
    Get summary statistics for transfer history.

    Query params:
        - days: Calculate summary for last N days (default: 30, max: 365)
    """
    days = request.args.get('days', 30, type=int)
    if days < 1:
        days = 30
    if days > 365:
        days = 365

    cutoff_date = datetime.utcnow() - timedelta(days=days)
    query = TransferHistory.query.filter(TransferHistory.started_at >= cutoff_date)

    counts = {status: query.filter(TransferHistory.status == status).count() for status in STATUSES}

    # Partial transfers reached the hot tier, so they count as successful here
    completed = counts['success'] + counts['partial'] + counts['failed']
    succeeded = counts['success'] + counts['partial']
    success_rate = round((succeeded / completed * 100) if completed > 0 else 0, 1)

    return jsonify({
        'days': days,
        'total_transfers': query.count(),
        'running': counts['running'],
        'successful': counts['success'],
        'partial': counts['partial'],
        'failed': counts['failed'],
        'success_rate': success_rate
    })


@bp.route('/cleanup', methods=['POST'])
@login_required
def cleanup_old_history():
    """
    Delete old history records.

    Request body:
        - days: Delete records older than N days (required, at least 30)

    Returns:
        JSON with number of records deleted
    """
    data = request.get_json(silent=True) or {}

    days = data.get('days')
    if not isinstance(days, int):
        return jsonify({'error': 'days parameter is required'}), 400
    if days < 30:
        return jsonify({'error': 'Cannot delete records newer than 30 days'}), 400

    cutoff_date = datetime.utcnow() - timedelta(days=days)
    count = TransferHistory.query.filter(
        TransferHistory.started_at < cutoff_date
    ).delete(synchronize_session=False)
    db.session.commit()

    return jsonify({
        'message': f'Deleted {count} old history records',
        'deleted_count': count
    })
