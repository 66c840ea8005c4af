"""
Backup capacity estimation.

Measures how large a site's compressed backup will be, then projects hot
and cold tier requirements for the whole fleet under a daily/weekly/monthly
retention plan.

Measurement methods (fastest to most accurate):
- heuristic: file listing plus a per-extension compression table
- sample: compress the first N bytes of the archive stream and extrapolate
- accurate: run the real archive pipeline and count the bytes
"""

import logging
import os
import shlex
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from tierkeep.utils.sizes import format_size, to_gib

from .errors import ConfigurationError, EstimationError, StorageError, TransportError
from .sources import ARCHIVE_EXCLUDES

logger = logging.getLogger(__name__)

METHODS = ('heuristic', 'sample', 'accurate')
DEFAULT_SAMPLE_SIZE = 100 * 1024 * 1024
TAR_HEADER_OVERHEAD = 512

# Fraction of the original size left after gzip
ALREADY_COMPRESSED_RATIO = 0.95
TEXT_RATIO = 0.30
UNKNOWN_RATIO = 0.50

# Capacity recommendations
HIGH_UTILIZATION_PERCENT = 80.0
RETENTION_CHOICES = (7, 5, 3)
MIGRATION_CHOICES = (7, 5, 3, 2, 1)
EXPANSION_FACTOR = 1.2
GROWTH_EXPANSION_FACTOR = 1.5
MANY_SITES = 100

ALREADY_COMPRESSED_EXTENSIONS = {
    '.jpg', '.jpeg', '.png', '.gif', '.webp', '.avif', '.heic', '.ico',
    '.mp3', '.mp4', '.m4a', '.m4v', '.mov', '.avi', '.mkv', '.webm', '.ogg',
    '.zip', '.gz', '.tgz', '.bz2', '.xz', '.zst', '.7z', '.rar',
    '.pdf', '.woff', '.woff2', '.docx', '.xlsx', '.pptx'
}
TEXT_EXTENSIONS = {
    '.txt', '.md', '.csv', '.tsv', '.log', '.sql', '.json', '.xml', '.yml', '.yaml',
    '.ini', '.conf', '.cfg', '.env', '.html', '.htm', '.css', '.scss', '.js', '.ts',
    '.jsx', '.tsx', '.php', '.py', '.rb', '.go', '.java', '.c', '.h', '.sh', '.svg'
}


def compression_factor(path: str) -> float:
    """Expected compressed/original size ratio for a file by extension."""
    ext = os.path.splitext(path)[1].lower()
    if ext in ALREADY_COMPRESSED_EXTENSIONS:
        return ALREADY_COMPRESSED_RATIO
    if ext in TEXT_EXTENSIONS:
        return TEXT_RATIO
    return UNKNOWN_RATIO


def _ratio_percent(compressed: int, uncompressed: int) -> float:
    if uncompressed <= 0:
        return 0.0
    return (1.0 - compressed / uncompressed) * 100.0


@dataclass(frozen=True)
class SiteEstimate:
    name: str
    uncompressed_size: int
    compressed_size: int
    method: str

    @property
    def compression_ratio(self) -> float:
        """Space saved by compression, in percent."""
        return _ratio_percent(self.compressed_size, self.uncompressed_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'uncompressed_size': self.uncompressed_size,
            'compressed_size': self.compressed_size,
            'compression_ratio': round(self.compression_ratio, 2),
            'method': self.method
        }


@dataclass(frozen=True)
class GrowthProjection:
    month: int
    total_gb: float
    hot_gb: float
    cold_gb: float
    monthly_cost: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'total_gb': round(self.total_gb, 3),
            'hot_gb': round(self.hot_gb, 3),
            'cold_gb': round(self.cold_gb, 3),
            'monthly_cost': None if self.monthly_cost is None else round(self.monthly_cost, 2)
        }


@dataclass(frozen=True)
class EstimateOptions:
    daily_retention: int = 14
    weekly_retention: int = 26
    monthly_retention: int = 6
    growth_rate: float = 0.0
    projection_months: int = 12
    buffer_percent: float = 20.0
    glacier_price_per_gb: float = 0.004
    retrieval_price_per_gb: float = 0.01


@dataclass(frozen=True)
class RetentionChange:
    """A smaller daily hot window and what it would occupy."""

    daily_retention: int
    hot_size: int
    percent_of_available: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'daily_retention': self.daily_retention,
            'hot_size': self.hot_size,
            'percent_of_available': round(self.percent_of_available, 1)
        }


@dataclass(frozen=True)
class CapacityRecommendations:
    """
    Estimated hot tier requirement compared with the space actually available.

    `status` is 'insufficient' when the requirement exceeds the space,
    'high_utilization' above HIGH_UTILIZATION_PERCENT, else 'sufficient'.
    Only the fields relevant to the status are set.
    """

    status: str
    available: int
    required_hot: int
    utilization_percent: float
    daily_retention: int
    shortfall: int = 0
    reduce_retention: Optional[RetentionChange] = None
    migrate_faster: Optional[RetentionChange] = None
    expand_to: Optional[int] = None
    expand_for_growth: Optional[int] = None
    max_sites: Optional[int] = None
    headroom: int = 0
    migrate_after_days: Optional[int] = None
    max_monthly_growth: Optional[float] = None
    months_of_growth: Optional[int] = None

    def actions(self) -> List[str]:
        """Operator-facing summary lines."""
        lines = []
        if self.status == 'insufficient':
            lines.append(
                f"Shortfall of {format_size(self.shortfall)} "
                f"({self.required_hot / self.available:.1f}x over capacity)"
            )
            if self.reduce_retention:
                lines.append(
                    f"Reduce retention to {self.reduce_retention.daily_retention} daily backups "
                    f"({format_size(self.reduce_retention.hot_size)})"
                )
            if self.migrate_faster:
                lines.append(
                    f"Keep {self.migrate_faster.daily_retention} days hot and migrate the rest "
                    f"to the cold tier ({format_size(self.migrate_faster.hot_size)})"
                )
            lines.append(
                f"Expand hot storage to at least {format_size(self.expand_to)}, "
                f"{format_size(self.expand_for_growth)} for future growth"
            )
            if self.max_sites is not None:
                lines.append(f"Reduce active sites to about {self.max_sites}")
        elif self.status == 'high_utilization':
            lines.append(f"Utilization at {self.utilization_percent:.1f}%, only {format_size(self.headroom)} headroom")
            lines.append(f"Plan for expansion if monthly growth exceeds {self.max_monthly_growth:.1f}%")
            if self.migrate_after_days:
                lines.append(
                    f"Consider migrating after {self.migrate_after_days} days instead of {self.daily_retention}"
                )
        else:
            lines.append(f"Utilization at {self.utilization_percent:.1f}%, {format_size(self.headroom)} headroom")
            if self.months_of_growth:
                lines.append(f"About {self.months_of_growth} months of growth at the current rate")
        return lines

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'available': self.available,
            'required_hot': self.required_hot,
            'utilization_percent': round(self.utilization_percent, 1),
            'shortfall': self.shortfall,
            'reduce_retention': self.reduce_retention.to_dict() if self.reduce_retention else None,
            'migrate_faster': self.migrate_faster.to_dict() if self.migrate_faster else None,
            'expand_to': self.expand_to,
            'expand_for_growth': self.expand_for_growth,
            'max_sites': self.max_sites,
            'headroom': self.headroom,
            'migrate_after_days': self.migrate_after_days,
            'max_monthly_growth': (None if self.max_monthly_growth is None
                                   else round(self.max_monthly_growth, 1)),
            'months_of_growth': self.months_of_growth,
            'actions': self.actions()
        }


@dataclass(frozen=True)
class CapacityEstimate:
    """Fleet sizing report. Built once, never modified."""

    method: str
    sites_scanned: int
    avg_compressed_size: int
    avg_uncompressed_size: int
    avg_compression_ratio: float
    per_site_hot: int
    per_site_cold: int
    fleet_hot: int
    fleet_cold: int
    fleet_total: int
    fleet_total_with_buffer: int
    options: EstimateOptions
    sites: Tuple[SiteEstimate, ...] = ()
    failures: Tuple[Tuple[str, str], ...] = ()
    growth_projections: Tuple[GrowthProjection, ...] = ()
    monthly_cost: Optional[float] = None
    retrieval_cost_10pct: Optional[float] = None
    recommendations: Optional[CapacityRecommendations] = None

    @property
    def per_site_total(self) -> int:
        return self.per_site_hot + self.per_site_cold

    def with_available_storage(self, available: int) -> 'CapacityEstimate':
        """Copy of this estimate with recommendations for `available` hot tier bytes."""
        return replace(self, recommendations=recommend_capacity(self, available))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method,
            'sites_scanned': self.sites_scanned,
            'retention': {
                'daily': self.options.daily_retention,
                'weekly': self.options.weekly_retention,
                'monthly': self.options.monthly_retention,
                'backups_per_site': (self.options.daily_retention
                                     + self.options.weekly_retention
                                     + self.options.monthly_retention)
            },
            'avg_compressed_size': self.avg_compressed_size,
            'avg_uncompressed_size': self.avg_uncompressed_size,
            'avg_compression_ratio': round(self.avg_compression_ratio, 2),
            'per_site': {
                'hot': self.per_site_hot,
                'cold': self.per_site_cold,
                'total': self.per_site_total
            },
            'fleet': {
                'hot': self.fleet_hot,
                'cold': self.fleet_cold,
                'total': self.fleet_total,
                'buffer_percent': self.options.buffer_percent,
                'total_with_buffer': self.fleet_total_with_buffer
            },
            'growth_projections': [p.to_dict() for p in self.growth_projections],
            'monthly_cost': None if self.monthly_cost is None else round(self.monthly_cost, 2),
            'retrieval_cost_10pct': (None if self.retrieval_cost_10pct is None
                                     else round(self.retrieval_cost_10pct, 2)),
            'sites': [s.to_dict() for s in self.sites],
            'failures': [{'site': name, 'error': error} for name, error in self.failures],
            'recommendations': self.recommendations.to_dict() if self.recommendations else None
        }


def project_growth(hot: int, cold: int, growth_rate: float, months: int,
                   glacier_price: float = 0.0) -> List[GrowthProjection]:
    """
    Compound a monthly growth rate over `months`, keeping the hot/cold split.

    Args:
        hot: Current fleet hot tier bytes
        cold: Current fleet cold tier bytes
        growth_rate: Monthly growth in percent
        months: Number of months to project
        glacier_price: Cold tier price per GB-month (0 to skip cost)
    """
    projections = []
    total = float(hot + cold)
    if total <= 0:
        return projections

    cold_share = cold / total
    multiplier = 1.0 + growth_rate / 100.0

    for month in range(1, months + 1):
        total *= multiplier
        total_gb = to_gib(total)
        cold_gb = total_gb * cold_share
        projections.append(GrowthProjection(
            month=month,
            total_gb=total_gb,
            hot_gb=total_gb - cold_gb,
            cold_gb=cold_gb,
            monthly_cost=cold_gb * glacier_price if glacier_price > 0 else None
        ))

    return projections


def build_estimate(
    method: str,
    avg_compressed: int,
    avg_uncompressed: int,
    site_count: int,
    options: EstimateOptions,
    sites: Tuple[SiteEstimate, ...] = (),
    failures: Tuple[Tuple[str, str], ...] = ()
) -> CapacityEstimate:
    """Project fleet requirements from a per-site average."""
    per_site_hot = avg_compressed * options.daily_retention
    per_site_cold = avg_compressed * (options.weekly_retention + options.monthly_retention)
    fleet_hot = per_site_hot * site_count
    fleet_cold = per_site_cold * site_count
    fleet_total = fleet_hot + fleet_cold

    growth = ()
    if options.growth_rate > 0 and options.projection_months > 0:
        growth = tuple(project_growth(
            fleet_hot, fleet_cold, options.growth_rate,
            options.projection_months, options.glacier_price_per_gb
        ))

    monthly_cost = None
    retrieval_cost = None
    if options.glacier_price_per_gb > 0:
        cold_gb = to_gib(fleet_cold)
        monthly_cost = cold_gb * options.glacier_price_per_gb
        if options.retrieval_price_per_gb > 0:
            retrieval_cost = cold_gb * 0.10 * options.retrieval_price_per_gb

    return CapacityEstimate(
        method=method,
        sites_scanned=site_count,
        avg_compressed_size=avg_compressed,
        avg_uncompressed_size=avg_uncompressed,
        avg_compression_ratio=_ratio_percent(avg_compressed, avg_uncompressed),
        per_site_hot=per_site_hot,
        per_site_cold=per_site_cold,
        fleet_hot=fleet_hot,
        fleet_cold=fleet_cold,
        fleet_total=fleet_total,
        fleet_total_with_buffer=int(fleet_total * (1.0 + options.buffer_percent / 100.0)),
        options=options,
        sites=tuple(sites),
        failures=tuple(failures),
        growth_projections=growth,
        monthly_cost=monthly_cost,
        retrieval_cost_10pct=retrieval_cost
    )


def recommend_capacity(estimate: CapacityEstimate, available: int) -> CapacityRecommendations:
    """
    Compare the estimated hot tier requirement with `available` bytes.

    When the requirement does not fit, suggests the largest of 7/5/3 daily
    backups that would, the longest hot window below the current daily
    retention that would (the rest migrating to the cold tier earlier), an
    expansion size with a 20% buffer and, for large fleets, how many sites
    the current policy can carry. When it fits, reports headroom and how
    many months of projected growth it absorbs.

    Raises:
        ValueError: If `available` is not positive
    """
    if available <= 0:
        raise ValueError("available storage must be positive")

    required = estimate.fleet_hot
    daily = estimate.options.daily_retention
    utilization = required / available * 100.0
    base = dict(available=available, required_hot=required,
                utilization_percent=utilization, daily_retention=daily)

    def first_fit(choices, below=None) -> Optional[RetentionChange]:
        for days in choices:
            if below is not None and days >= below:
                continue
            hot = estimate.avg_compressed_size * days * estimate.sites_scanned
            if hot <= available:
                return RetentionChange(days, hot, hot / available * 100.0)
        return None

    if required > available:
        expand_to = int(required * EXPANSION_FACTOR)
        max_sites = None
        per_site_hot = estimate.avg_compressed_size * daily
        if estimate.sites_scanned > MANY_SITES and per_site_hot > 0:
            max_sites = available // per_site_hot
        return CapacityRecommendations(
            status='insufficient',
            shortfall=required - available,
            reduce_retention=first_fit(RETENTION_CHOICES),
            migrate_faster=first_fit(MIGRATION_CHOICES, below=daily),
            expand_to=expand_to,
            expand_for_growth=int(expand_to * GROWTH_EXPANSION_FACTOR),
            max_sites=max_sites,
            **base
        )

    headroom = available - required
    if utilization > HIGH_UTILIZATION_PERCENT:
        return CapacityRecommendations(
            status='high_utilization',
            headroom=headroom,
            max_monthly_growth=20.0 / utilization * 100.0,
            migrate_after_days=daily - 3 if daily > 3 else None,
            **base
        )

    months_of_growth = None
    available_gb = to_gib(available)
    for projection in estimate.growth_projections:
        if projection.hot_gb > available_gb:
            months_of_growth = projection.month - 1
            break

    return CapacityRecommendations(
        status='sufficient',
        headroom=headroom,
        months_of_growth=months_of_growth,
        **base
    )


class CapacityEstimator:
    """
    Measures sites over a transport and projects fleet capacity.

    Args:
        transport: Transport used to run measurement commands
        hot: HotStore, needed only by estimate_from_backup
        options: Retention, growth and pricing inputs
        sample_size: Bytes of archive stream compressed by the 'sample' method
    """

    def __init__(self, transport=None, hot=None, options: Optional[EstimateOptions] = None,
                 sample_size: int = DEFAULT_SAMPLE_SIZE):
        self.transport = transport
        self.hot = hot
        self.options = options or EstimateOptions()
        self.sample_size = sample_size

    def _excludes(self) -> str:
        return ' '.join(f'--exclude={shlex.quote(p)}' for p in ARCHIVE_EXCLUDES)

    def _uncompressed_size(self, working_dir: str) -> int:
        out = self.transport.run(f'du -sb {shlex.quote(working_dir)} | cut -f1')
        return int(out.strip() or 0)

    def measure_heuristic(self, working_dir: str) -> Tuple[int, int]:
        """Returns (compressed, uncompressed) from a file listing."""
        not_archives = ' '.join(f'-not -name {shlex.quote(p)}' for p in ARCHIVE_EXCLUDES)
        out = self.transport.run(
            f"find {shlex.quote(working_dir)} -type f {not_archives} -printf '%s %p\\n'"
        )

        compressed = 0.0
        uncompressed = 0
        for line in out.splitlines():
            size_str, _, path = line.partition(' ')
            if not size_str.isdigit():
                continue
            size = int(size_str)
            uncompressed += size
            compressed += size * compression_factor(path) + TAR_HEADER_OVERHEAD

        return int(compressed), uncompressed

    def measure_sample(self, working_dir: str) -> Tuple[int, int]:
        """Returns (compressed, uncompressed) extrapolated from a compressed prefix."""
        uncompressed = self._uncompressed_size(working_dir)
        if uncompressed == 0:
            return 0, 0

        out = self.transport.run(
            f'tar -cf - {self._excludes()} {shlex.quote(working_dir)} 2>/dev/null '
            f'| head -c {int(self.sample_size)} | gzip -c | wc -c'
        )
        sample_compressed = int(out.strip() or 0)
        sampled = min(self.sample_size, uncompressed)
        ratio = sample_compressed / sampled if sampled else 1.0

        return int(uncompressed * ratio), uncompressed

    def measure_accurate(self, working_dir: str) -> Tuple[int, int]:
        """Returns (compressed, uncompressed) by running the real pipeline."""
        uncompressed = self._uncompressed_size(working_dir)
        out = self.transport.run(
            f'tar -czf - {self._excludes()} {shlex.quote(working_dir)} 2>/dev/null | wc -c'
        )
        return int(out.strip() or 0), uncompressed

    def measure(self, name: str, working_dir: str, method: str = 'heuristic') -> SiteEstimate:
        """
        Measure one site.

        Raises:
            ValueError: For an unknown method
            TransportError: If a measurement command fails
        """
        if method not in METHODS:
            raise ValueError(f"Invalid estimate method: {method} (valid: {', '.join(METHODS)})")

        measure = getattr(self, f'measure_{method}')
        compressed, uncompressed = measure(working_dir)
        logger.info(f"Site {name}: {uncompressed} bytes, ~{compressed} compressed ({method})")
        return SiteEstimate(name, uncompressed, compressed, method)

    def estimate_from_sites(self, targets: List[Tuple[str, str]], method: str = 'heuristic') -> CapacityEstimate:
        """
        Measure each (name, working_dir) in turn and project the fleet.

        A site that fails is recorded in `failures` and the scan continues.

        Raises:
            EstimationError: If no site could be measured
        """
        sites = []
        failures = []
        for name, working_dir in targets:
            try:
                sites.append(self.measure(name, working_dir, method))
            except (TransportError, ValueError) as e:
                logger.warning(f"Could not measure {name}: {e}")
                failures.append((name, str(e)))

        if not sites:
            raise EstimationError(f"Failed to measure any site (tried {len(targets)})")

        return self.from_site_estimates(sites, method, failures)

    def from_site_estimates(self, sites: List[SiteEstimate], method: str,
                            failures: List[Tuple[str, str]] = ()) -> CapacityEstimate:
        """Aggregate site measurements, possibly gathered over several transports."""
        if not sites:
            raise EstimationError("No site measurements to aggregate")
        avg_compressed = sum(s.compressed_size for s in sites) // len(sites)
        avg_uncompressed = sum(s.uncompressed_size for s in sites) // len(sites)
        return build_estimate(
            method, avg_compressed, avg_uncompressed, len(sites),
            self.options, tuple(sites), tuple(failures)
        )

    def estimate_from_manual(self, avg_compressed_size: int, site_count: int) -> CapacityEstimate:
        """Project the fleet from an operator-supplied average backup size."""
        if site_count < 1:
            raise EstimationError("site_count is required when using a manual average size")
        if avg_compressed_size < 0:
            raise EstimationError("average size must not be negative")
        return build_estimate('manual', avg_compressed_size, 0, site_count, self.options)

    def estimate_from_backup(self, object_key: str, site_count: int = 1) -> CapacityEstimate:
        """Use an existing hot tier backup's size as the per-site baseline."""
        if self.hot is None:
            raise ConfigurationError("A hot tier client is required to estimate from a backup")
        try:
            obj = self.hot.head_object(object_key)
        except StorageError as e:
            raise EstimationError(f"Cannot read baseline backup {object_key}: {e}")
        site = SiteEstimate(object_key, 0, obj.size, 'from-backup')
        return build_estimate(
            'from-backup', obj.size, 0, max(site_count, 1), self.options, (site,)
        )
