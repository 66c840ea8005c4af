"""
Backup executor - orchestrates the capture workflow for a site.

Workflow:
1. Create TransferHistory record (status: running)
2. Run pre-backup commands on the site host (failure aborts)
3. Check hot tier capacity (optional)
4. Stream the archive into the hot tier, fanned out to the cold vault
5. Prune old backups with the site's retention policy
6. Run post-backup commands (failure is logged only)
7. Update TransferHistory (status: success/partial/failed)
"""

import logging
import posixpath
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from tierkeep import db
from tierkeep.models import BackupSite, TransferHistory

from .capacity import CapacityProbe
from .errors import StorageError, TransferError, TransportError
from .retention import policy_from_settings
from .sources import build_tar_command, create_transport, run_commands
from .storage import StorageClients
from .transfer import StreamingTransfer, TransferOutcome

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'


def resolve_prefix(site_name: str, bucket_path: Optional[str] = None,
                   global_path: Optional[str] = None) -> str:
    """
    Key prefix for a site's backups.

    The site's own bucket path wins when set, including '' for the bucket
    root; then the global path; then 'backups/<site>/'.
    """
    path = bucket_path if bucket_path is not None else global_path
    if path is None:
        return f'backups/{site_name}/'

    path = path.strip().strip('/')
    if not path:
        return ''
    return posixpath.normpath(path) + '/'


def build_object_key(site_name: str, label: Optional[str] = None, bucket_path: Optional[str] = None,
                     global_path: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """
    Object key for a new backup, e.g. 'backups/example.com/example.com-20240101-120000.tgz'.

    Args:
        site_name: Site name
        label: Archive name prefix (defaults to site name)
        bucket_path: Site bucket path (None inherits global_path)
        global_path: HOT_BUCKET_PATH
        now: Timestamp (defaults to current UTC time)
    """
    now = now or datetime.utcnow()
    name = f"{label or site_name}-{now.strftime(TIMESTAMP_FORMAT)}.tgz"
    return resolve_prefix(site_name, bucket_path, global_path) + name


def site_policy(site: BackupSite):
    """Retention policy stored on a site, or None when it keeps everything."""
    return policy_from_settings(
        keep=site.retention_keep,
        smart=site.retention_smart,
        keep_daily=site.retention_daily,
        keep_weekly=site.retention_weekly,
        keep_monthly=site.retention_monthly,
        weekly_day=site.retention_weekly_day,
        monthly_day=site.retention_monthly_day
    )


def prune_site(hot, site: BackupSite, global_path: Optional[str] = None,
               dry_run: bool = False) -> Dict[str, Any]:
    """
    Apply a site's retention policy to its backups in the hot tier.

    Only keys under the site prefix that start with '<label>-' are
    considered, so sites sharing a bucket path never prune each other.

    Returns:
        Dict with 'selected' keys, 'deleted' keys and 'errors'
    """
    policy = site_policy(site)
    result = {'site': site.name, 'selected': [], 'deleted': [], 'errors': []}
    if policy is None:
        return result

    prefix = resolve_prefix(site.name, site.bucket_path, global_path) + f"{site.label or site.name}-"
    objects = hot.list_objects(prefix)
    to_delete = policy.select(objects)
    result['selected'] = [o.key for o in to_delete]

    if not to_delete:
        logger.info(f"Site {site.name}: {len(objects)} backups, all preserved by retention policy")
        return result

    logger.info(f"Site {site.name}: {len(objects)} backups, deleting {len(to_delete)} by retention policy")
    if dry_run:
        return result

    outcome = hot.delete_objects(result['selected'])
    result['deleted'] = outcome['deleted']
    result['errors'] = [{'key': k, 'error': e} for k, e in outcome['errors']]
    return result


class BackupExecutor:
    """
    Orchestrates the capture workflow for one site.

    Args:
        site: BackupSite to capture
        clients: Storage clients for this invocation
        config: App config mapping (HOT_BUCKET_PATH, TEMP_DIR, capacity guard)
        transport: Transport override; built from the site settings when None
        probe: Capacity probe for the guard; built from config when None
    """

    def __init__(self, site: BackupSite, clients: StorageClients, config: Optional[Dict[str, Any]] = None,
                 transport=None, probe: Optional[CapacityProbe] = None):
        self.site = site
        self.clients = clients
        self.config = config or {}
        self.transport = transport
        self.probe = probe
        self.history_record = None
        self.outcome = None
        self.logs = []

    def plan(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """What a run would do, without touching anything."""
        key = build_object_key(
            self.site.name, self.site.label, self.site.bucket_path,
            self.clients.hot_bucket_path, now
        )
        return {
            'site': self.site.name,
            'object_key': key,
            'command': build_tar_command(self.site.working_dir, self.site.parent_dir),
            'use_cold': bool(self.site.use_cold and self.clients.cold is not None),
            'pre_commands': self.site.get_pre_commands(),
            'post_commands': self.site.get_post_commands()
        }

    def execute(self) -> TransferHistory:
        """
        Run the backup workflow.

        Returns:
            TransferHistory record with execution results
        """
        self.history_record = TransferHistory(
            site_id=self.site.id,
            status='running',
            started_at=datetime.utcnow()
        )
        db.session.add(self.history_record)
        db.session.commit()

        self._log(f"Starting backup of site: {self.site.name}")
        owns_transport = self.transport is None

        try:
            if owns_transport:
                self.transport = create_transport(self.site.source_type, self.site.get_source_config())
            self._execute_workflow()

            self.history_record.status = 'success' if self.outcome.succeeded else 'partial'
            self._log(f"Backup finished with status {self.history_record.status}")

        except (TransferError, TransportError, StorageError, ValueError) as e:
            self.history_record.status = 'failed'
            self.history_record.error_message = str(e)
            self._log(f"Backup failed: {e}", logging.ERROR)

        except Exception as e:
            self.history_record.status = 'failed'
            self.history_record.error_message = f"{type(e).__name__}: {e}"
            self._log(f"Backup failed unexpectedly: {type(e).__name__}: {e}", logging.ERROR)
            logger.exception(f"Unexpected error backing up {self.site.name}")

        finally:
            self.history_record.completed_at = datetime.utcnow()
            self.history_record.logs = '\n'.join(self.logs)
            db.session.commit()
            if owns_transport and self.transport is not None:
                self.transport.close()

        return self.history_record

    def _execute_workflow(self):
        site = self.site

        pre_commands = site.get_pre_commands()
        if pre_commands:
            self._log(f"Running {len(pre_commands)} pre-backup commands")
            run_commands(self.transport, pre_commands)

        self._check_capacity()

        plan = self.plan()
        self.history_record.object_key = plan['object_key']
        self._log(f"Streaming archive of {site.working_dir} to {plan['object_key']}")
        self._flush_logs_to_db()

        try:
            self.outcome = StreamingTransfer(self.clients, self.config.get('TEMP_DIR')).transfer(
                self.transport, plan['command'], plan['object_key'], use_cold=site.use_cold
            )
        except TransferError as e:
            if e.outcome is not None:
                self._record_outcome(e.outcome)
            raise

        self._record_outcome(self.outcome)
        for warning in self.outcome.warnings:
            self._log(f"Warning: {warning}", logging.WARNING)
        if self.outcome.cold_attempted and not self.outcome.cold_succeeded:
            self._log(f"Cold tier copy failed: {self.outcome.error}", logging.WARNING)
        self._log(f"Uploaded {self.outcome.bytes_written} bytes to hot tier")
        self._flush_logs_to_db()

        try:
            pruned = prune_site(self.clients.hot, site, self.clients.hot_bucket_path)
        except StorageError as e:
            # The new backup is stored; pruning is retried by the next run
            self._log(f"Retention pass failed: {e}", logging.WARNING)
            pruned = {'deleted': [], 'errors': []}
        self.history_record.pruned_count = len(pruned['deleted'])
        if pruned['deleted']:
            self._log(f"Pruned {len(pruned['deleted'])} old backups")
        for error in pruned['errors']:
            self._log(f"Failed to prune {error['key']}: {error['error']}", logging.WARNING)

        post_commands = site.get_post_commands()
        if post_commands:
            self._log(f"Running {len(post_commands)} post-backup commands")
            try:
                run_commands(self.transport, post_commands)
            except TransportError as e:
                self._log(f"Post-backup command failed: {e}", logging.WARNING)

    def _check_capacity(self):
        if not self.config.get('BACKUP_CAPACITY_CHECK') and self.probe is None:
            return

        threshold = float(self.config.get('BACKUP_CAPACITY_THRESHOLD') or 95.0)
        probe = self.probe or CapacityProbe(self.config.get('MONITOR_STORAGE_PATH') or '/')
        try:
            sample = probe.sample()
        except OSError as e:
            raise StorageError(f"Could not check hot tier capacity: {e}")

        self._log(f"Hot tier usage: {sample.used_percent:.1f}% (limit {threshold:.1f}%)")
        if sample.exceeds(threshold):
            raise StorageError(
                f"Hot tier usage {sample.used_percent:.1f}% exceeds {threshold:.1f}%, refusing new backup"
            )

    def _record_outcome(self, outcome: TransferOutcome):
        self.history_record.bytes_written = outcome.bytes_written
        self.history_record.hot_succeeded = outcome.hot_succeeded
        self.history_record.cold_succeeded = outcome.cold_succeeded
        self.history_record.archive_id = outcome.archive_id

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run log.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.site.name}] {message}")

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.history_record:
            self.history_record.logs = '\n'.join(self.logs)
            db.session.commit()


def run_batch(sites: List[BackupSite], clients: StorageClients,
              config: Optional[Dict[str, Any]] = None) -> List[Tuple[BackupSite, Any]]:
    """
    Back up sites one after another.

    A failing site does not stop the batch.

    Returns:
        List of (site, TransferHistory) or (site, exception) pairs
    """
    results = []
    for site in sites:
        try:
            results.append((site, BackupExecutor(site, clients, config).execute()))
        except Exception as e:
            logger.error(f"Backup of {site.name} could not run: {e}")
            results.append((site, e))
    return results


def execute_backup_site(site_id: int, clients: StorageClients, config: Optional[Dict[str, Any]] = None,
                        allow_disabled: bool = False) -> TransferHistory:
    """
    Execute a backup by site ID.

    Raises:
        ValueError: If site not found, or if disabled and not allowed
    """
    site = db.session.get(BackupSite, site_id)

    if not site:
        raise ValueError(f"Backup site not found: {site_id}")

    if not site.enabled and not allow_disabled:
        raise ValueError(f"Backup site is disabled: {site.name}")

    return BackupExecutor(site, clients, config).execute()
