"""
Hot tier disk utilization probes.

The hot tier's object store usually sits on a dedicated mount, either on
this host (statvfs) or on a storage server reached over SSH (`df -B1`).
"""

import logging
import os
import shlex
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageCapacitySample:
    """Point-in-time disk usage of the mount holding the hot tier."""

    total: int
    used: int
    available: int
    used_percent: float
    path: str

    def exceeds(self, threshold: float) -> bool:
        return self.used_percent > threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'total': self.total,
            'used': self.used,
            'available': self.available,
            'used_percent': round(self.used_percent, 2)
        }


def probe_local(path: str = '/') -> StorageCapacitySample:
    """
    Sample a local filesystem.

    Raises:
        OSError: If the path cannot be stat'ed
    """
    stat = os.statvfs(path)
    total = stat.f_blocks * stat.f_frsize
    available = stat.f_bavail * stat.f_frsize
    used = total - available
    used_percent = (used / total * 100.0) if total else 0.0

    if path == '/':
        logger.warning(
            "Checking root filesystem capacity; if the object store lives on a "
            "separate mount, configure MONITOR_STORAGE_PATH"
        )

    return StorageCapacitySample(total, used, available, used_percent, path)


def parse_df_output(stdout: str) -> StorageCapacitySample:
    """
    Parse the last line of `df -B1 <path>`.

    Example line:
        /dev/sda 532575944704 532575166464 0 100% /mnt/objects

    Raises:
        ValueError: If the line does not look like df output
    """
    lines = [line for line in stdout.strip().splitlines() if line.strip()]
    if not lines:
        raise ValueError("empty df output")

    fields = lines[-1].split()
    if len(fields) < 6:
        raise ValueError(f"unexpected df output format: {stdout!r}")

    try:
        total = int(fields[1])
        used = int(fields[2])
        available = int(fields[3])
        used_percent = float(fields[4].rstrip('%'))
    except ValueError as e:
        raise ValueError(f"unexpected df output format: {e}")

    return StorageCapacitySample(total, used, available, used_percent, fields[5])


def probe_remote(transport, path: str) -> StorageCapacitySample:
    """
    Sample a filesystem on the transport's host.

    Raises:
        TransportError: If df fails or its output cannot be parsed
    """
    stdout = transport.run(f'df -B1 {shlex.quote(path)} | tail -n 1')
    try:
        return parse_df_output(stdout)
    except ValueError as e:
        raise TransportError(f"Could not parse remote capacity for {path}: {e}", stderr=stdout)


class CapacityProbe:
    """
    Capacity sampler bound to one path.

    Args:
        path: Mount point or any path on the hot tier's filesystem
        transport: Remote transport; None probes this host
    """

    def __init__(self, path: str = '/', transport: Optional[Any] = None):
        self.path = path or '/'
        self.transport = transport

    def sample(self) -> StorageCapacitySample:
        if self.transport is not None:
            return probe_remote(self.transport, self.path)
        return probe_local(self.path)
