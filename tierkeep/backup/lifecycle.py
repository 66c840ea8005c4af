"""
Scheduled lifecycle tasks.

Wires config, storage clients and persistence around the engine for the
recurring jobs (capacity monitor, daily retention pass) and for fleet
capacity estimates.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from tierkeep import db
from tierkeep.models import BackupSite, MonitorRun

from .capacity import CapacityProbe
from .errors import CapacityBoundExceeded, ConfigurationError, EstimationError, StorageError, TransportError
from .estimator import CapacityEstimate, CapacityEstimator, EstimateOptions
from .executor import prune_site
from .monitor import CapacityMonitor
from .sources import SSHTransport, create_transport
from .storage import StorageClients
from .transfer import StreamingTransfer, cleanup_stale_scratch_files

logger = logging.getLogger(__name__)


def build_probe(config: Mapping[str, Any]) -> CapacityProbe:
    """Capacity probe for the hot tier mount, remote when MONITOR_SSH_HOST is set."""
    path = config.get('MONITOR_STORAGE_PATH') or '/'
    if not config.get('MONITOR_SSH_HOST'):
        return CapacityProbe(path)

    transport = SSHTransport(
        host=config['MONITOR_SSH_HOST'],
        username=config.get('MONITOR_SSH_USER') or 'root',
        port=int(config.get('MONITOR_SSH_PORT') or 22),
        private_key=config.get('MONITOR_SSH_KEY')
    )
    return CapacityProbe(path, transport)


def build_monitor(config: Mapping[str, Any], clients: StorageClients, probe: Optional[CapacityProbe] = None,
                  threshold: Optional[float] = None, migrate_percent: Optional[float] = None,
                  force_delete: Optional[bool] = None, prefix: str = '') -> CapacityMonitor:
    """CapacityMonitor from config, with per-call overrides."""
    return CapacityMonitor(
        clients=clients,
        transfer=StreamingTransfer(clients, config.get('TEMP_DIR')),
        probe=probe or build_probe(config),
        threshold=threshold if threshold is not None else float(config.get('MONITOR_THRESHOLD', 95.0)),
        migrate_percent=(migrate_percent if migrate_percent is not None
                         else float(config.get('MONITOR_MIGRATE_PERCENT', 10.0))),
        force_delete=force_delete if force_delete is not None else bool(config.get('MONITOR_FORCE_DELETE')),
        prefix=prefix,
        max_iterations=int(config.get('MONITOR_MAX_ITERATIONS', 10)),
        pause_seconds=float(config.get('MONITOR_PAUSE_SECONDS', 2.0))
    )


def run_capacity_monitor(config: Mapping[str, Any], dry_run: bool = False,
                         clients: Optional[StorageClients] = None,
                         monitor: Optional[CapacityMonitor] = None) -> MonitorRun:
    """
    Run the capacity monitor once and record it as a MonitorRun.

    Returns:
        MonitorRun with status within_threshold, preview, bound_exceeded or failed
    """
    if monitor is None:
        clients = clients or StorageClients.from_config(config)
        monitor = build_monitor(config, clients)

    run = MonitorRun(status='running', dry_run=dry_run, threshold=monitor.threshold,
                     started_at=datetime.utcnow())
    db.session.add(run)
    db.session.commit()

    if not dry_run:
        cleanup_stale_scratch_files(config.get('TEMP_DIR'))

    report = None
    try:
        report = monitor.run(dry_run=dry_run)
        if report.within_threshold:
            run.status = 'within_threshold'
        else:
            run.status = 'preview'
    except CapacityBoundExceeded as e:
        logger.error(str(e))
        report = e.report
        run.status = 'bound_exceeded'
        run.error_message = str(e)
    except (ConfigurationError, StorageError, TransportError, OSError) as e:
        logger.error(f"Capacity monitor failed: {e}")
        run.status = 'failed'
        run.error_message = str(e)
    finally:
        transport = monitor.probe.transport
        if transport is not None:
            transport.close()

    if report is not None:
        passes = report.passes
        run.iterations = len(passes)
        if passes and passes[0].sample:
            run.initial_used_percent = passes[0].sample.used_percent
        elif report.final_sample:
            run.initial_used_percent = report.final_sample.used_percent
        if report.final_sample:
            run.final_used_percent = report.final_sample.used_percent
        run.migrated_count = sum(len(p.migrated) for p in passes)
        run.deleted_count = sum(len(p.deleted) + len(p.force_deleted) for p in passes)
        run.bytes_freed = sum(p.bytes_freed for p in passes)
        run.report = json.dumps(report.to_dict(), default=str)

    run.completed_at = datetime.utcnow()
    db.session.commit()
    return run


def enforce_retention_policies(config: Mapping[str, Any], clients: Optional[StorageClients] = None,
                               dry_run: bool = False) -> Dict[str, Any]:
    """
    Apply every enabled site's retention policy to the hot tier.

    This function should be called by the scheduler on a daily basis.

    Returns:
        Summary dict with sites_processed, deleted, errors and per-site results
    """
    clients = clients or StorageClients.from_config(config)
    summary = {'sites_processed': 0, 'deleted': 0, 'errors': [], 'sites': []}

    for site in BackupSite.query.filter_by(enabled=True).order_by(BackupSite.name).all():
        try:
            result = prune_site(clients.hot, site, clients.hot_bucket_path, dry_run=dry_run)
        except StorageError as e:
            message = f"Failed to enforce policy for site {site.name}: {e}"
            logger.error(message)
            summary['errors'].append(message)
            continue

        summary['sites_processed'] += 1
        summary['deleted'] += len(result['deleted'])
        summary['errors'].extend(f"{err['key']}: {err['error']}" for err in result['errors'])
        summary['sites'].append(result)

    logger.info(
        f"Retention enforcement complete. Sites: {summary['sites_processed']}, "
        f"deleted: {summary['deleted']}, errors: {len(summary['errors'])}"
    )
    return summary


def estimate_options_from_config(config: Mapping[str, Any], **overrides) -> EstimateOptions:
    """EstimateOptions from ESTIMATE_* settings; keyword overrides that are None are ignored."""
    values = {
        'daily_retention': int(config.get('ESTIMATE_DAILY_RETENTION', 14)),
        'weekly_retention': int(config.get('ESTIMATE_WEEKLY_RETENTION', 26)),
        'monthly_retention': int(config.get('ESTIMATE_MONTHLY_RETENTION', 6)),
        'buffer_percent': float(config.get('ESTIMATE_BUFFER_PERCENT', 20.0)),
        'projection_months': int(config.get('ESTIMATE_PROJECTION_MONTHS', 12)),
        'glacier_price_per_gb': float(config.get('ESTIMATE_GLACIER_PRICE', 0.004)),
        'retrieval_price_per_gb': float(config.get('ESTIMATE_RETRIEVAL_PRICE', 0.01))
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return EstimateOptions(**values)


def estimate_sites(sites: List[BackupSite], method: str, options: EstimateOptions,
                   sample_size: int, transport_factory=create_transport) -> CapacityEstimate:
    """
    Measure each site over its own transport, one site at a time.

    A site that cannot be reached or measured is recorded as a failure and
    the scan moves on.

    Raises:
        EstimationError: If no site could be measured
    """
    measured = []
    failures = []

    for site in sites:
        try:
            transport = transport_factory(site.source_type, site.get_source_config())
        except ValueError as e:
            failures.append((site.name, str(e)))
            continue

        try:
            estimator = CapacityEstimator(transport, options=options, sample_size=sample_size)
            measured.append(estimator.measure(site.name, site.working_dir, method))
        except (TransportError, ValueError) as e:
            logger.warning(f"Could not measure {site.name}: {e}")
            failures.append((site.name, str(e)))
        finally:
            transport.close()

    if not measured:
        raise EstimationError(f"Failed to measure any site (tried {len(sites)})")

    return CapacityEstimator(options=options).from_site_estimates(measured, method, failures)
