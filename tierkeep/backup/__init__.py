"""
Backup lifecycle module for Tierkeep.

This module handles the storage lifecycle engine including:
- Capture transports (local and SSH)
- Streaming transfer into the hot tier with cold tier fan-out
- Tree hash checksums for the cold vault
- Retention policy selection
- Capacity estimation and monitoring
"""

from .capacity import CapacityProbe, StorageCapacitySample
from .deletion import DeletionRequest, execute_deletion, plan_deletion
from .estimator import CapacityEstimate, CapacityEstimator, EstimateOptions
from .executor import BackupExecutor, build_object_key, run_batch
from .monitor import CapacityMonitor, MigrationPass, MonitorReport
from .objects import StorageObject
from .retention import SimpleOverwrite, SmartTiered
from .sources import LocalTransport, SSHTransport, create_transport
from .storage import ColdVault, HotStore, StorageClients
from .transfer import StreamingTransfer, TransferOutcome
from .treehash import TreeHasher, tree_hash

__all__ = [
    'BackupExecutor',
    'build_object_key',
    'run_batch',
    'CapacityProbe',
    'StorageCapacitySample',
    'CapacityEstimate',
    'CapacityEstimator',
    'EstimateOptions',
    'CapacityMonitor',
    'MigrationPass',
    'MonitorReport',
    'DeletionRequest',
    'plan_deletion',
    'execute_deletion',
    'StorageObject',
    'SimpleOverwrite',
    'SmartTiered',
    'LocalTransport',
    'SSHTransport',
    'create_transport',
    'HotStore',
    'ColdVault',
    'StorageClients',
    'StreamingTransfer',
    'TransferOutcome',
    'TreeHasher',
    'tree_hash'
]
