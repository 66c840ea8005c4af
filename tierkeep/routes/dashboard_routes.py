"""
Dashboard routes - Overview and scheduler endpoints.
"""

from flask import Blueprint, jsonify
from flask_login import login_required
from datetime import datetime, timedelta
from sqlalchemy import func

from tierkeep import db
from tierkeep.models import BackupSite, MonitorRun, TransferHistory
from tierkeep.scheduler import get_scheduled_jobs, get_scheduler_diagnostics, is_scheduler_running


bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/overview', methods=['GET'])
@login_required
def get_overview():
    """
    Get dashboard overview statistics.

    Returns:
        JSON with overview stats:
        - total_sites / active_sites
        - last_transfer: Most recent transfer
        - last_monitor_run: Most recent capacity monitor run
        - bytes_last_7_days: Bytes written to the hot tier in the last week
        - scheduler_status: running or stopped
    """
    last_transfer = TransferHistory.query.order_by(TransferHistory.started_at.desc()).first()
    last_monitor = MonitorRun.query.order_by(MonitorRun.started_at.desc()).first()

    week_ago = datetime.utcnow() - timedelta(days=7)
    bytes_last_week = db.session.query(
        func.sum(TransferHistory.bytes_written)
    ).filter(
        TransferHistory.hot_succeeded.is_(True),
        TransferHistory.started_at >= week_ago
    ).scalar() or 0

    return jsonify({
        'total_sites': BackupSite.query.count(),
        'active_sites': BackupSite.query.filter_by(enabled=True).count(),
        'last_transfer': last_transfer.to_dict() if last_transfer else None,
        'last_monitor_run': last_monitor.to_dict() if last_monitor else None,
        'bytes_last_7_days': int(bytes_last_week),
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped'
    })


@bp.route('/scheduled-jobs', methods=['GET'])
@login_required
def get_scheduled_jobs_info():
    """
    Get information about currently scheduled jobs.

    Returns:
        JSON array of scheduled jobs with next run times
    """
    return jsonify(get_scheduled_jobs())


@bp.route('/scheduler-diagnostics', methods=['GET'])
@login_required
def get_scheduler_diagnostics_endpoint():
    """Scheduler state, jobs and health information."""
    return jsonify(get_scheduler_diagnostics())
