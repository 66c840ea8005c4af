"""
Backup sites routes - CRUD operations and backup execution.
"""

import json
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required
from apscheduler.triggers.cron import CronTrigger

from tierkeep import db
from tierkeep.models import BackupSite, TransferHistory
from tierkeep.scheduler import sync_backup_sites, trigger_backup_now
from tierkeep.backup.executor import BackupExecutor, prune_site, run_batch
from tierkeep.backup.retention import policy_from_settings
from tierkeep.backup.storage import StorageClients
from tierkeep.utils.params import parse_flag


bp = Blueprint('sites', __name__, url_prefix='/api/sites')

SOURCE_TYPES = ['local', 'ssh']
RETENTION_FIELDS = {
    'keep': 'retention_keep',
    'smart': 'retention_smart',
    'daily': 'retention_daily',
    'weekly': 'retention_weekly',
    'monthly': 'retention_monthly',
    'weekly_day': 'retention_weekly_day',
    'monthly_day': 'retention_monthly_day'
}


def _validate_site(site: BackupSite):
    """Returns an error message, or None when the site settings are usable."""
    if site.source_type not in SOURCE_TYPES:
        return 'Source type must be local or ssh'
    if site.source_type == 'ssh' and not site.get_source_config().get('host'):
        return 'SSH sites require source_config.host'
    if not site.working_dir:
        return 'Working directory is required'
    if site.schedule_cron:
        try:
            CronTrigger.from_crontab(site.schedule_cron, timezone='UTC')
        except ValueError as e:
            return f'Invalid cron expression: {e}'
    try:
        policy_from_settings(
            keep=site.retention_keep,
            smart=site.retention_smart,
            keep_daily=site.retention_daily,
            keep_weekly=site.retention_weekly,
            keep_monthly=site.retention_monthly,
            weekly_day=site.retention_weekly_day,
            monthly_day=site.retention_monthly_day
        )
    except ValueError as e:
        return f'Invalid retention policy: {e}'
    if site.retention_keep is not None and site.retention_keep < 0:
        return 'Invalid retention policy: keep must be >= 0'
    return None


def _apply_fields(site: BackupSite, data: dict):
    for field in ('name', 'description', 'enabled', 'source_type', 'working_dir', 'parent_dir',
                  'label', 'bucket_path', 'use_cold', 'schedule_cron'):
        if field in data:
            setattr(site, field, data[field])

    if 'source_config' in data:
        site.source_config = json.dumps(data['source_config'] or {})
    if 'pre_commands' in data:
        site.pre_commands = json.dumps(list(data['pre_commands'] or []))
    if 'post_commands' in data:
        site.post_commands = json.dumps(list(data['post_commands'] or []))

    for key, column in RETENTION_FIELDS.items():
        if key in (data.get('retention') or {}):
            setattr(site, column, data['retention'][key])


def _clients() -> StorageClients:
    return StorageClients.from_config(current_app.config)


@bp.route('/', methods=['GET'])
@login_required
def list_sites():
    """
    Get list of all backup sites.

    Returns:
        JSON array of backup sites
    """
    sites = BackupSite.query.order_by(BackupSite.name).all()
    return jsonify([site.to_dict() for site in sites])


@bp.route('/<int:site_id>', methods=['GET'])
@login_required
def get_site(site_id):
    site = db.get_or_404(BackupSite, site_id)
    return jsonify(site.to_dict())


@bp.route('/', methods=['POST'])
@login_required
def create_site():
    """
    Create a new backup site.

    Request body:
        - name: Site name (required)
        - source_type: 'local' or 'ssh' (required)
        - working_dir: Directory to archive (required)
        - source_config: host, port, username, password, private_key (ssh only)
        - parent_dir, label, bucket_path, use_cold, schedule_cron (optional)
        - pre_commands, post_commands: lists of shell commands (optional)
        - retention: keep, smart, daily, weekly, monthly, weekly_day, monthly_day (optional)

    Returns:
        JSON with created site
    """
    data = request.get_json(silent=True) or {}

    if not data.get('name'):
        return jsonify({'error': 'Site name is required'}), 400

    if BackupSite.query.filter_by(name=data['name']).first():
        return jsonify({'error': 'Site name already exists'}), 400

    site = BackupSite(
        source_config='{}',
        enabled=True,
        use_cold=True,
        retention_smart=False,
        retention_daily=14,
        retention_weekly=26,
        retention_monthly=6,
        retention_weekly_day=0,
        retention_monthly_day=1
    )
    _apply_fields(site, data)

    error = _validate_site(site)
    if error:
        return jsonify({'error': error}), 400

    db.session.add(site)
    db.session.commit()

    sync_backup_sites()

    return jsonify(site.to_dict()), 201


@bp.route('/<int:site_id>', methods=['PUT'])
@login_required
def update_site(site_id):
    """
    Update an existing backup site.

    Request body: Same as create_site (all fields optional)
    """
    site = db.get_or_404(BackupSite, site_id)
    data = request.get_json(silent=True) or {}

    if 'name' in data and data['name'] != site.name:
        if BackupSite.query.filter_by(name=data['name']).first():
            return jsonify({'error': 'Site name already exists'}), 400

    _apply_fields(site, data)

    error = _validate_site(site)
    if error:
        db.session.rollback()
        return jsonify({'error': error}), 400

    db.session.commit()
    sync_backup_sites()

    return jsonify(site.to_dict())


@bp.route('/<int:site_id>', methods=['DELETE'])
@login_required
def delete_site(site_id):
    """Delete a backup site and its history. Stored backups are not touched."""
    site = db.get_or_404(BackupSite, site_id)

    db.session.delete(site)
    db.session.commit()

    sync_backup_sites()

    return jsonify({'message': 'Backup site deleted successfully'})


@bp.route('/<int:site_id>/run', methods=['POST'])
@login_required
def run_site_now(site_id):
    """
    Run a site backup.

    Request body:
        - dry_run: Report the object key and capture command only
        - wait: Run in this request instead of queueing on the scheduler

    Returns:
        JSON plan (dry run), history record (wait) or queue confirmation
    """
    site = db.get_or_404(BackupSite, site_id)
    data = request.get_json(silent=True) or {}

    if parse_flag(data, 'dry_run'):
        executor = BackupExecutor(site, _clients(), current_app.config)
        return jsonify({'dry_run': True, **executor.plan()})

    if parse_flag(data, 'wait'):
        history = BackupExecutor(site, _clients(), current_app.config).execute()
        return jsonify(history.to_dict())

    try:
        trigger_backup_now(site_id)
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'message': f"Backup of site '{site.name}' has been queued for immediate execution"
    }), 202


@bp.route('/run', methods=['POST'])
@login_required
def run_all_sites():
    """
    Back up every enabled site in this request, one after another.

    Returns:
        JSON array of per-site results
    """
    sites = BackupSite.query.filter_by(enabled=True).order_by(BackupSite.name).all()
    results = run_batch(sites, _clients(), current_app.config)

    payload = []
    for site, outcome in results:
        if isinstance(outcome, TransferHistory):
            payload.append({'site': site.name, 'status': outcome.status, 'history': outcome.to_dict()})
        else:
            payload.append({'site': site.name, 'status': 'failed', 'error': str(outcome)})

    return jsonify(payload)


@bp.route('/<int:site_id>/prune', methods=['POST'])
@login_required
def prune_site_now(site_id):
    """
    Apply the site's retention policy now.

    Request body:
        - dry_run: Report what would be deleted
    """
    site = db.get_or_404(BackupSite, site_id)
    data = request.get_json(silent=True) or {}
    clients = _clients()

    dry_run = parse_flag(data, 'dry_run')
    result = prune_site(clients.hot, site, clients.hot_bucket_path, dry_run=dry_run)
    result['dry_run'] = dry_run
    return jsonify(result)


@bp.route('/<int:site_id>/history', methods=['GET'])
@login_required
def get_site_history(site_id):
    """
    Get transfer history for a specific site.

    Query params:
        - limit: Max number of records (default: 50, max: 200)
    """
    db.get_or_404(BackupSite, site_id)

    limit = min(request.args.get('limit', 50, type=int), 200)
    history = TransferHistory.query.filter_by(site_id=site_id).order_by(
        TransferHistory.started_at.desc()
    ).limit(limit).all()

    return jsonify([record.to_dict() for record in history])
