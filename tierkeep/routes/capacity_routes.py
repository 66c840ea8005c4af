"""
Capacity routes - hot tier utilization, the capacity monitor and
fleet capacity estimates.
"""

import json
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from tierkeep.models import BackupSite, MonitorRun
from tierkeep.backup.errors import EstimationError, StorageError
from tierkeep.backup.estimator import METHODS, CapacityEstimator
from tierkeep.backup.lifecycle import (
    build_monitor,
    build_probe,
    estimate_options_from_config,
    estimate_sites,
    run_capacity_monitor,
)
from tierkeep.backup.storage import StorageClients
from tierkeep.utils.params import parse_flag
from tierkeep.utils.sizes import parse_size


bp = Blueprint('capacity', __name__, url_prefix='/api/capacity')


def _sample_hot_tier(config):
    probe = build_probe(config)
    try:
        return probe.sample()
    except OSError as e:
        raise StorageError(f"Could not sample hot tier capacity: {e}")
    finally:
        if probe.transport is not None:
            probe.transport.close()


@bp.route('/', methods=['GET'])
@login_required
def get_capacity():
    """
    Sample hot tier disk utilization.

    Returns:
        JSON with the sample and whether it exceeds MONITOR_THRESHOLD
    """
    sample = _sample_hot_tier(current_app.config)

    threshold = float(current_app.config.get('MONITOR_THRESHOLD', 95.0))
    return jsonify({
        **sample.to_dict(),
        'threshold': threshold,
        'exceeds_threshold': sample.exceeds(threshold)
    })


@bp.route('/monitor', methods=['POST'])
@login_required
def run_monitor():
    """
    Run the capacity monitor once.

    Request body:
        - dry_run: Sample once and preview one migration pass
        - threshold: Override MONITOR_THRESHOLD
        - migrate_percent: Override MONITOR_MIGRATE_PERCENT
        - force_delete: Override MONITOR_FORCE_DELETE
        - prefix: Only consider objects under this prefix

    Returns:
        JSON MonitorRun with the full report
    """
    data = request.get_json(silent=True) or {}
    config = current_app.config

    try:
        threshold = float(data['threshold']) if data.get('threshold') is not None else None
        migrate_percent = float(data['migrate_percent']) if data.get('migrate_percent') is not None else None
    except (TypeError, ValueError):
        return jsonify({'error': 'threshold and migrate_percent must be numbers'}), 400

    clients = StorageClients.from_config(config)
    try:
        monitor = build_monitor(
            config, clients,
            threshold=threshold,
            migrate_percent=migrate_percent,
            force_delete=parse_flag(data, 'force_delete', default=None),
            prefix=data.get('prefix') or ''
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    run = run_capacity_monitor(config, dry_run=parse_flag(data, 'dry_run'), monitor=monitor)

    payload = run.to_dict()
    payload['report'] = json.loads(run.report) if run.report else None
    status = 200
    if run.status == 'bound_exceeded':
        status = 500
    elif run.status == 'failed':
        status = 502
    return jsonify(payload), status


@bp.route('/monitor/runs', methods=['GET'])
@login_required
def list_monitor_runs():
    """
    Recent capacity monitor runs.

    Query params:
        - limit: Max number of records (default: 20, max: 200)
    """
    limit = min(request.args.get('limit', 20, type=int), 200)
    runs = MonitorRun.query.order_by(MonitorRun.started_at.desc()).limit(limit).all()
    return jsonify([run.to_dict() for run in runs])


@bp.route('/estimate', methods=['POST'])
@login_required
def estimate_capacity():
    """
    Estimate hot and cold tier requirements for the fleet.

    Request body (one source):
        - sites: List of site IDs, or omitted for all enabled sites
        - avg_size: Manual average compressed size ('125MB', '1.5GB')
          with site_count
        - from_backup: Hot tier object key used as the per-site baseline,
          with optional site_count

    Options:
        - method: heuristic (default), sample or accurate
        - sample_size: Bytes compressed by the sample method ('100MB')
        - daily, weekly, monthly: Retention counts
        - growth_rate: Monthly growth percent
        - projection_months, buffer_percent, glacier_price, retrieval_price
        - available_storage: Hot tier space to plan against ('500GB'), adds
          recommendations to the estimate
        - use_capacity_sample: Plan against the space the capacity probe
          reports as available instead

    Returns:
        JSON CapacityEstimate
    """
    data = request.get_json(silent=True) or {}
    config = current_app.config

    try:
        options = estimate_options_from_config(
            config,
            daily_retention=_int_or_none(data.get('daily')),
            weekly_retention=_int_or_none(data.get('weekly')),
            monthly_retention=_int_or_none(data.get('monthly')),
            growth_rate=_float_or_none(data.get('growth_rate')),
            projection_months=_int_or_none(data.get('projection_months')),
            buffer_percent=_float_or_none(data.get('buffer_percent')),
            glacier_price_per_gb=_float_or_none(data.get('glacier_price')),
            retrieval_price_per_gb=_float_or_none(data.get('retrieval_price'))
        )
        sample_size = parse_size(data.get('sample_size') or config.get('ESTIMATE_SAMPLE_SIZE') or '100MB')
        available = None
        if data.get('available_storage') is not None:
            available = parse_size(str(data['available_storage']))
            if available <= 0:
                raise ValueError("available_storage must be positive")
        use_sample = parse_flag(data, 'use_capacity_sample')
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    method = data.get('method') or 'heuristic'
    if method not in METHODS:
        return jsonify({'error': f"Invalid estimate method: {method} (valid: {', '.join(METHODS)})"}), 400

    if data.get('avg_size') is not None:
        try:
            avg_size = parse_size(str(data['avg_size']))
            site_count = int(data.get('site_count') or 0)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        if site_count < 1:
            return jsonify({'error': 'site_count is required when using avg_size'}), 400
        estimate = CapacityEstimator(options=options).estimate_from_manual(avg_size, site_count)

    elif data.get('from_backup'):
        try:
            site_count = int(data.get('site_count') or 1)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        hot = StorageClients.from_config(config).hot
        estimate = CapacityEstimator(hot=hot, options=options).estimate_from_backup(data['from_backup'], site_count)

    else:
        query = BackupSite.query.filter_by(enabled=True)
        if data.get('sites'):
            query = BackupSite.query.filter(BackupSite.id.in_(data['sites']))
        sites = query.order_by(BackupSite.name).all()
        if not sites:
            return jsonify({'error': 'No sites to estimate'}), 400
        estimate = estimate_sites(sites, method, options, sample_size)

    if available is None and use_sample:
        available = _sample_hot_tier(config).available
        if available <= 0:
            raise EstimationError("Hot tier reports no available space to plan against")
    if available is not None:
        estimate = estimate.with_available_storage(available)

    return jsonify(estimate.to_dict())


def _int_or_none(value):
    return None if value is None else int(value)


def _float_or_none(value):
    return None if value is None else float(value)
