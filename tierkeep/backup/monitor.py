"""
Capacity monitor for the hot tier.

Samples disk usage of the hot tier's mount and, while it is above the
threshold, moves the oldest backups to the cold vault. A hot object is
deleted only after its cold copy was confirmed. The loop is bounded; running
out of iterations is an error for the operator to look at.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .capacity import CapacityProbe, StorageCapacitySample
from .errors import CapacityBoundExceeded, ConfigurationError, StorageError
from .objects import StorageObject
from .retention import select_oldest
from .storage import StorageClients
from .transfer import StreamingTransfer, TransferOutcome

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
PAUSE_SECONDS = 2.0


@dataclass
class MigrationPass:
    """Everything one migration pass selected, moved and deleted."""

    iteration: int
    dry_run: bool
    selected: List[StorageObject]
    sample: Optional[StorageCapacitySample] = None
    results: List[Tuple[str, TransferOutcome]] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    force_deleted: List[str] = field(default_factory=list)
    delete_errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def migrated(self) -> List[str]:
        return [key for key, outcome in self.results if outcome.cold_succeeded]

    @property
    def failed(self) -> List[str]:
        return [key for key, outcome in self.results if not outcome.cold_succeeded]

    @property
    def all_failed(self) -> bool:
        return bool(self.results) and not self.migrated

    @property
    def bytes_freed(self) -> int:
        sizes = {o.key: o.size for o in self.selected}
        if self.dry_run:
            return sum(sizes.values())
        return sum(sizes.get(k, 0) for k in self.deleted + self.force_deleted)

    @property
    def status(self) -> str:
        if self.dry_run:
            return 'preview'
        if not self.selected:
            return 'nothing_selected'
        if self.failed or self.delete_errors:
            return 'partial'
        return 'success'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iteration': self.iteration,
            'dry_run': self.dry_run,
            'status': self.status,
            'sample': self.sample.to_dict() if self.sample else None,
            'selected': [o.to_dict() for o in self.selected],
            'results': [outcome.to_dict() for _, outcome in self.results],
            'migrated': self.migrated,
            'failed': self.failed,
            'deleted': self.deleted,
            'force_deleted': self.force_deleted,
            'delete_errors': [{'key': k, 'error': e} for k, e in self.delete_errors],
            'bytes_freed': self.bytes_freed
        }


@dataclass
class MonitorReport:
    threshold: float
    migrate_percent: float
    dry_run: bool
    passes: List[MigrationPass] = field(default_factory=list)
    final_sample: Optional[StorageCapacitySample] = None
    within_threshold: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'threshold': self.threshold,
            'migrate_percent': self.migrate_percent,
            'dry_run': self.dry_run,
            'within_threshold': self.within_threshold,
            'final_sample': self.final_sample.to_dict() if self.final_sample else None,
            'passes': [p.to_dict() for p in self.passes]
        }


class CapacityMonitor:
    """
    Bounded control loop keeping hot tier usage under a threshold.

    Running two monitors against the same hot tier at once is not supported.
    """

    def __init__(
        self,
        clients: StorageClients,
        transfer: StreamingTransfer,
        probe: CapacityProbe,
        threshold: float = 95.0,
        migrate_percent: float = 10.0,
        force_delete: bool = False,
        prefix: str = '',
        max_iterations: int = MAX_ITERATIONS,
        pause_seconds: float = PAUSE_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ):
        if not 0 < migrate_percent <= 100:
            raise ValueError(f"migrate_percent must be in (0, 100], got {migrate_percent}")
        self.clients = clients
        self.transfer = transfer
        self.probe = probe
        self.threshold = threshold
        self.migrate_percent = migrate_percent
        self.force_delete = force_delete
        self.prefix = prefix
        self.max_iterations = max_iterations
        self.pause_seconds = pause_seconds
        self._sleep = sleep

    def run(self, dry_run: bool = False) -> MonitorReport:
        """
        Check capacity and migrate until under threshold.

        Args:
            dry_run: Sample once, report one simulated pass, change nothing

        Returns:
            MonitorReport

        Raises:
            ConfigurationError: If migration is needed but no cold vault is configured
            CapacityBoundExceeded: If usage is still above threshold after max_iterations
        """
        report = MonitorReport(
            threshold=self.threshold,
            migrate_percent=self.migrate_percent,
            dry_run=dry_run
        )
        logger.info(
            f"Monitoring {self.probe.path} (threshold {self.threshold:.1f}%, "
            f"migrate {self.migrate_percent:.1f}%, dry_run={dry_run})"
        )

        for iteration in range(1, self.max_iterations + 1):
            sample = self.probe.sample()
            report.final_sample = sample
            logger.info(
                f"Iteration {iteration}: {sample.used_percent:.1f}% used "
                f"({sample.used} of {sample.total} bytes, {sample.available} available)"
            )

            if not sample.exceeds(self.threshold):
                logger.info(f"Usage {sample.used_percent:.1f}% is within threshold {self.threshold:.1f}%")
                report.within_threshold = True
                return report

            if not dry_run and self.clients.cold is None:
                raise ConfigurationError("Hot tier is over threshold but no cold vault is configured")

            logger.warning(
                f"Usage {sample.used_percent:.1f}% exceeds threshold {self.threshold:.1f}%, "
                f"migrating oldest {self.migrate_percent:.1f}% of backups"
            )
            objects = self.clients.hot.list_objects(self.prefix)
            selected = select_oldest(objects, percent=self.migrate_percent)

            migration = self.migrate(
                selected,
                delete_after=True,
                dry_run=dry_run,
                force_delete=self.force_delete,
                iteration=iteration
            )
            migration.sample = sample
            report.passes.append(migration)

            if dry_run:
                logger.info("Dry run complete, one pass previewed")
                return report

            self._sleep(self.pause_seconds)

        raise CapacityBoundExceeded(
            self.max_iterations, report.final_sample.used_percent, self.threshold, report
        )

    def migrate(
        self,
        selected: List[StorageObject],
        delete_after: bool = True,
        dry_run: bool = False,
        force_delete: bool = False,
        iteration: int = 1
    ) -> MigrationPass:
        """
        Migrate a selection of hot objects to the cold vault.

        Args:
            selected: Objects to move, processed one at a time in order
            delete_after: Delete each hot object once its cold copy is confirmed
            dry_run: Report the selection only
            force_delete: If every migration fails, delete the selection anyway
            iteration: Pass number for reporting

        Returns:
            MigrationPass with per-object outcomes
        """
        migration = MigrationPass(iteration=iteration, dry_run=dry_run, selected=list(selected))

        if dry_run:
            for obj in selected:
                logger.info(f"[DRY RUN] Would migrate {obj.key} ({obj.size} bytes, {obj.last_modified.isoformat()})")
            return migration

        total = len(selected)
        for index, obj in enumerate(selected, start=1):
            logger.info(f"Migrating {index}/{total}: {obj.key} ({obj.size} bytes)")
            outcome = self.transfer.migrate(obj)
            migration.results.append((obj.key, outcome))

            if not outcome.cold_succeeded:
                logger.warning(f"Migration of {obj.key} failed, keeping hot copy: {outcome.error}")
                continue

            if delete_after:
                try:
                    self.clients.hot.delete_object(obj.key)
                    migration.deleted.append(obj.key)
                except StorageError as e:
                    # Already archived; the hot copy just lingers until the next pass
                    logger.error(f"Archived {obj.key} but could not delete hot copy: {e}")
                    migration.delete_errors.append((obj.key, str(e)))

        if migration.all_failed and force_delete:
            keys = [obj.key for obj in selected]
            logger.warning(f"All {len(keys)} migrations failed, force-deleting from hot tier")
            result = self.clients.hot.delete_objects(keys)
            migration.force_deleted.extend(result['deleted'])
            migration.delete_errors.extend(result['errors'])

        logger.info(
            f"Pass {iteration}: {len(migration.migrated)}/{total} migrated, "
            f"{len(migration.deleted) + len(migration.force_deleted)} deleted, "
            f"{migration.bytes_freed} bytes freed"
        )
        return migration
