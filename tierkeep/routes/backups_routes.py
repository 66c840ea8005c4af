"""
Backup object routes - listing, reading, deletion and migration of hot tier backups,
plus the storage connection self-test.
"""

import posixpath
from datetime import datetime, timezone
from flask import Blueprint, current_app, jsonify, request, send_file
from flask_login import login_required

from tierkeep.backup.deletion import DeletionRequest, execute_deletion, plan_deletion
from tierkeep.backup.errors import RangeError, StorageError
from tierkeep.backup.lifecycle import build_monitor
from tierkeep.backup.retention import parse_human_duration, select_older_than, select_oldest
from tierkeep.backup.storage import StorageClients
from tierkeep.backup.transfer import cleanup_stale_scratch_files
from tierkeep.utils.params import parse_flag


bp = Blueprint('backups', __name__, url_prefix='/api/backups')
storage_bp = Blueprint('storage', __name__, url_prefix='/api/storage')


def _clients(require_cold: bool = False) -> StorageClients:
    return StorageClients.from_config(current_app.config, require_cold=require_cold)


def _optional_int(data, name):
    value = data.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RangeError(f"{name} must be an integer")


@bp.route('/', methods=['GET'])
@login_required
def list_backups():
    """
    List hot tier objects.

    Query params:
        - prefix: Key prefix (default: all)
        - limit: Max number of objects

    Returns:
        JSON with objects (newest first) and totals
    """
    prefix = request.args.get('prefix', '')
    limit = request.args.get('limit', type=int)

    objects = _clients().hot.list_objects(prefix, limit=limit)
    objects.sort(key=lambda o: (o.last_modified, o.key), reverse=True)

    return jsonify({
        'prefix': prefix,
        'count': len(objects),
        'total_size': sum(o.size for o in objects),
        'objects': [o.to_dict() for o in objects]
    })


@bp.route('/latest', methods=['GET'])
@login_required
def latest_backup():
    """Most recent object under ?prefix=, 404 if there is none."""
    prefix = request.args.get('prefix', '')
    obj = _clients().hot.latest_object(prefix)
    if obj is None:
        return jsonify({'error': f"No backups found under prefix '{prefix}'"}), 404
    return jsonify(obj.to_dict())


@bp.route('/read', methods=['GET'])
@login_required
def read_backup():
    """
    Stream a hot tier object back as a download.

    Query params:
        - key: Object key
        - latest: Read the most recent object under ?prefix= instead
        - prefix: Prefix searched by latest

    Returns:
        The object bytes; 404 if the key or prefix holds nothing
    """
    hot = _clients().hot
    key = request.args.get('key')

    if not key:
        if not parse_flag(request.args, 'latest'):
            return jsonify({'error': 'key is required unless latest is set'}), 400
        prefix = request.args.get('prefix', '')
        latest = hot.latest_object(prefix)
        if latest is None:
            return jsonify({'error': f"No backups found under prefix '{prefix}'"}), 404
        key = latest.key

    obj = hot.head_object(key)
    current_app.logger.info(f"Streaming {key} ({obj.size} bytes) from hot tier")
    response = send_file(
        hot.get_stream(key),
        mimetype='application/octet-stream',
        as_attachment=True,
        download_name=posixpath.basename(key) or 'backup',
        etag=False
    )
    response.content_length = obj.size
    response.headers['X-Object-Key'] = key
    return response


@bp.route('/delete', methods=['POST'])
@login_required
def delete_backups():
    """
    Delete hot tier objects.

    Request body:
        - one of: object_key, latest, delete_all, numeric_range ('1-10'),
          date_range ('20240101-20240131')
        - prefix: Prefix the selector applies to
        - limit: Max number of objects to delete
        - dry_run: Report only
        - confirm: Required for a real deletion

    Returns:
        JSON with selected objects and deletion results
    """
    data = request.get_json(silent=True) or {}

    deletion = DeletionRequest(
        object_key=data.get('object_key'),
        prefix=data.get('prefix') or '',
        latest=parse_flag(data, 'latest'),
        delete_all=parse_flag(data, 'delete_all'),
        numeric_range=data.get('numeric_range'),
        date_range=data.get('date_range'),
        limit=_optional_int(data, 'limit')
    )

    try:
        deletion.selector()
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    hot = _clients().hot
    plan = plan_deletion(hot, deletion)
    result = execute_deletion(
        hot, plan,
        dry_run=parse_flag(data, 'dry_run'),
        confirm=parse_flag(data, 'confirm')
    )
    return jsonify(result)


@bp.route('/migrate', methods=['POST'])
@login_required
def migrate_backups():
    """
    Copy hot tier objects to the cold vault.

    Request body:
        - one of: object_key, count, percent, older_than ('30d', '6m')
        - prefix: Prefix for count/percent/older_than selection
        - delete_after: Delete each hot object once archived (default: false)
        - dry_run: Report the selection only

    Returns:
        JSON MigrationPass
    """
    data = request.get_json(silent=True) or {}
    dry_run = parse_flag(data, 'dry_run')
    prefix = data.get('prefix') or ''

    selectors = [name for name in ('object_key', 'count', 'percent', 'older_than') if data.get(name) is not None]
    if len(selectors) != 1:
        return jsonify({'error': 'specify exactly one of object_key, count, percent, older_than'}), 400

    clients = _clients(require_cold=not dry_run)
    hot = clients.hot

    if data.get('object_key'):
        selected = [hot.head_object(data['object_key'])]
    else:
        objects = hot.list_objects(prefix)
        try:
            if data.get('older_than') is not None:
                age = parse_human_duration(str(data['older_than']))
                selected = select_older_than(objects, age, datetime.now(timezone.utc))
            elif data.get('count') is not None:
                selected = select_oldest(objects, count=int(data['count']))
            else:
                selected = select_oldest(objects, percent=float(data['percent']))
        except ValueError as e:
            return jsonify({'error': str(e)}), 400

    if not dry_run:
        cleanup_stale_scratch_files(current_app.config.get('TEMP_DIR'))

    monitor = build_monitor(current_app.config, clients)
    migration = monitor.migrate(
        selected,
        delete_after=parse_flag(data, 'delete_after'),
        dry_run=dry_run
    )
    return jsonify(migration.to_dict())


@storage_bp.route('/test', methods=['POST'])
@login_required
def test_storage():
    """
    Self-test the configured tiers: write, read back, verify and delete.

    Returns:
        JSON with per-tier results; 502 if any tier failed
    """
    clients = _clients()
    results = {}
    failed = False

    try:
        results['hot'] = {'success': True, **clients.hot.self_test()}
    except StorageError as e:
        results['hot'] = {'success': False, 'error': str(e)}
        failed = True

    if clients.cold is not None:
        try:
            clients.cold.ensure_vault()
            results['cold'] = {'success': True, **clients.cold.self_test(current_app.config.get('TEMP_DIR'))}
        except StorageError as e:
            results['cold'] = {'success': False, 'error': str(e)}
            failed = True
    else:
        results['cold'] = {'success': None, 'message': 'Cold tier not configured'}

    return jsonify(results), 502 if failed else 200
