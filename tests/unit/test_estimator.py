"""
Unit tests for capacity estimation (tierkeep/backup/estimator.py).
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from tierkeep.backup.errors import ConfigurationError, EstimationError, StorageError
from tierkeep.backup.estimator import (
    TAR_HEADER_OVERHEAD,
    CapacityEstimator,
    EstimateOptions,
    RetentionChange,
    SiteEstimate,
    build_estimate,
    compression_factor,
    project_growth,
    recommend_capacity,
)
from tierkeep.backup.objects import StorageObject
from tierkeep.backup.sources import CommandResult
from tierkeep.utils.sizes import GIB

MB = 1024 * 1024


class TestCompressionFactor:
    """Test the per-extension compression table."""

    @pytest.mark.parametrize('path, factor', [
        ('/srv/img/photo.JPG', 0.95),
        ('/srv/app/archive.zip', 0.95),
        ('/srv/app/index.php', 0.30),
        ('/srv/db/dump.sql', 0.30),
        ('/srv/bin/blob', 0.50),
        ('/srv/data/file.dat', 0.50),
    ])
    def test_factor(self, path, factor):
        assert compression_factor(path) == factor


class TestBuildEstimate:
    """Test fleet projection arithmetic."""

    def test_retention_multiplies_average(self):
        options = EstimateOptions(daily_retention=14, weekly_retention=26, monthly_retention=6,
                                  buffer_percent=20, glacier_price_per_gb=0)

        estimate = build_estimate('manual', 100 * MB, 0, 10, options)

        assert estimate.per_site_hot == 100 * MB * 14
        assert estimate.per_site_cold == 100 * MB * 32
        assert estimate.fleet_hot == 100 * MB * 14 * 10
        assert estimate.fleet_cold == 100 * MB * 32 * 10
        assert estimate.fleet_total == estimate.fleet_hot + estimate.fleet_cold
        assert estimate.fleet_total_with_buffer == int(estimate.fleet_total * 1.2)
        assert estimate.monthly_cost is None
        assert estimate.growth_projections == ()

    def test_costs(self):
        options = EstimateOptions(daily_retention=0, weekly_retention=1, monthly_retention=0,
                                  glacier_price_per_gb=0.004, retrieval_price_per_gb=0.01)

        estimate = build_estimate('manual', GIB, 0, 100, options)

        assert estimate.fleet_cold == 100 * GIB
        assert estimate.monthly_cost == pytest.approx(0.4)
        assert estimate.retrieval_cost_10pct == pytest.approx(0.1)

    def test_to_dict(self):
        estimate = build_estimate('manual', MB, 2 * MB, 2, EstimateOptions())
        data = estimate.to_dict()

        assert data['retention']['backups_per_site'] == 14 + 26 + 6
        assert data['avg_compression_ratio'] == 50.0
        assert data['fleet']['total'] == estimate.fleet_total
        assert data['sites'] == []


class TestGrowthProjection:
    """Test compounding growth projections."""

    def test_compounds_monthly(self):
        projections = project_growth(GIB, GIB, growth_rate=10, months=2)

        assert [p.month for p in projections] == [1, 2]
        assert projections[0].total_gb == pytest.approx(2.2)
        assert projections[1].total_gb == pytest.approx(2.42)
        assert projections[1].hot_gb == pytest.approx(1.21)
        assert projections[1].monthly_cost is None

    def test_cost_per_month(self):
        projections = project_growth(0, GIB, growth_rate=100, months=1, glacier_price=1.0)
        assert projections[0].monthly_cost == pytest.approx(2.0)

    def test_empty_fleet(self):
        assert project_growth(0, 0, 10, 12) == []

    def test_included_in_estimate(self):
        options = EstimateOptions(growth_rate=5, projection_months=6)
        estimate = build_estimate('manual', MB, 0, 1, options)
        assert len(estimate.growth_projections) == 6


class TestRecommendations:
    """Test comparing the hot tier requirement with available space."""

    def _estimate(self, avg=GIB, sites=10, daily=14, **options):
        return build_estimate('manual', avg, 0, sites, EstimateOptions(daily_retention=daily, **options))

    def test_shortfall(self):
        recs = recommend_capacity(self._estimate(), 100 * GIB)

        assert recs.status == 'insufficient'
        assert recs.required_hot == 140 * GIB
        assert recs.shortfall == 40 * GIB
        assert recs.utilization_percent == pytest.approx(140.0)
        assert recs.reduce_retention == RetentionChange(7, 70 * GIB, 70.0)
        assert recs.migrate_faster.daily_retention == 7
        assert recs.expand_to == pytest.approx(168 * GIB)
        assert recs.expand_for_growth == pytest.approx(252 * GIB)
        assert recs.max_sites is None
        assert recs.actions()[0] == 'Shortfall of 40.00 GB (1.4x over capacity)'

    def test_only_faster_migration_fits(self):
        recs = recommend_capacity(self._estimate(), 12 * GIB)

        assert recs.reduce_retention is None
        assert recs.migrate_faster.daily_retention == 1
        assert recs.migrate_faster.hot_size == 10 * GIB

    def test_faster_migration_stays_below_current_window(self):
        recs = recommend_capacity(self._estimate(daily=5), 45 * GIB)

        assert recs.reduce_retention.daily_retention == 3
        assert recs.migrate_faster.daily_retention == 3

    def test_large_fleet_gets_site_limit(self):
        recs = recommend_capacity(self._estimate(avg=MB, sites=200), 1400 * MB)

        assert recs.status == 'insufficient'
        assert recs.max_sites == 100
        assert 'Reduce active sites to about 100' in recs.actions()

    def test_high_utilization(self):
        recs = recommend_capacity(self._estimate(), 160 * GIB)

        assert recs.status == 'high_utilization'
        assert recs.headroom == 20 * GIB
        assert recs.migrate_after_days == 11
        assert recs.max_monthly_growth == pytest.approx(22.857, rel=1e-3)
        assert recs.shortfall == 0

    def test_months_of_growth(self):
        estimate = self._estimate(weekly_retention=0, monthly_retention=0,
                                  growth_rate=10, projection_months=12)

        recs = recommend_capacity(estimate, 200 * GIB)

        assert recs.status == 'sufficient'
        assert recs.headroom == 60 * GIB
        assert recs.months_of_growth == 3
        assert 'About 3 months of growth at the current rate' in recs.actions()

    def test_growth_never_reaches_capacity(self):
        recs = recommend_capacity(self._estimate(growth_rate=1, projection_months=3), 1024 * GIB)

        assert recs.status == 'sufficient'
        assert recs.months_of_growth is None

    def test_requires_available_space(self):
        with pytest.raises(ValueError):
            recommend_capacity(self._estimate(), 0)

    def test_attached_to_estimate(self):
        estimate = self._estimate()

        planned = estimate.with_available_storage(100 * GIB)

        assert estimate.recommendations is None
        assert estimate.to_dict()['recommendations'] is None
        data = planned.to_dict()['recommendations']
        assert data['status'] == 'insufficient'
        assert data['reduce_retention'] == {'daily_retention': 7, 'hot_size': 70 * GIB, 'percent_of_available': 70.0}
        assert data['actions'][-1] == 'Expand hot storage to at least 168.00 GB, 252.00 GB for future growth'


class TestMeasurement:
    """Test measuring sites over a transport."""

    def test_heuristic(self, make_transport):
        listing = '1000 /srv/site/index.php\n2000 /srv/site/logo.png\n3000 /srv/site/data.bin\n'
        transport = make_transport({'find ': listing})

        site = CapacityEstimator(transport).measure('example.com', '/srv/site', 'heuristic')

        assert site.uncompressed_size == 6000
        expected = 1000 * 0.30 + 2000 * 0.95 + 3000 * 0.50 + 3 * TAR_HEADER_OVERHEAD
        assert site.compressed_size == pytest.approx(expected, abs=1)
        assert "-printf" in transport.commands[0]
        assert "-not -name '*.tgz'" in transport.commands[0]

    def test_sample_extrapolates(self, make_transport):
        transport = make_transport({'du -sb': '4000\n', 'gzip -c': '500\n'})

        compressed, uncompressed = CapacityEstimator(transport, sample_size=1000).measure_sample('/srv/site')

        assert uncompressed == 4000
        assert compressed == 2000
        assert any('head -c 1000' in command for command in transport.commands)

    def test_sample_of_small_site(self, make_transport):
        """A site smaller than the sample is compressed whole."""
        transport = make_transport({'du -sb': '400\n', 'gzip -c': '100\n'})

        compressed, uncompressed = CapacityEstimator(transport, sample_size=1000).measure_sample('/srv/site')

        assert (compressed, uncompressed) == (100, 400)

    def test_sample_of_empty_site(self, make_transport):
        transport = make_transport({'du -sb': '0\n'})
        assert CapacityEstimator(transport).measure_sample('/srv/site') == (0, 0)

    def test_accurate(self, make_transport):
        transport = make_transport({'du -sb': '9000\n', 'tar -czf': '3000\n'})

        site = CapacityEstimator(transport).measure('a', '/srv/a', 'accurate')

        assert (site.compressed_size, site.uncompressed_size) == (3000, 9000)
        assert site.compression_ratio == pytest.approx(66.666, rel=1e-3)

    def test_invalid_method(self, make_transport):
        with pytest.raises(ValueError):
            CapacityEstimator(make_transport()).measure('a', '/srv/a', 'guess')

    def test_estimate_from_sites_records_failures(self, make_transport):
        transport = make_transport({
            'find /srv/a ': '1000 /srv/a/x.txt\n',
            'find /srv/b ': CommandResult('', 'find: /srv/b: No such file', 1),
        })

        estimate = CapacityEstimator(transport).estimate_from_sites([('a', '/srv/a'), ('b', '/srv/b')])

        assert estimate.sites_scanned == 1
        assert [s.name for s in estimate.sites] == ['a']
        assert estimate.failures[0][0] == 'b'

    def test_estimate_from_sites_all_fail(self, make_transport):
        transport = make_transport({'find': CommandResult('', 'denied', 1)})

        with pytest.raises(EstimationError):
            CapacityEstimator(transport).estimate_from_sites([('a', '/srv/a')])

    def test_from_site_estimates_averages(self):
        sites = [SiteEstimate('a', 1000, 100, 'accurate'), SiteEstimate('b', 3000, 300, 'accurate')]

        estimate = CapacityEstimator().from_site_estimates(sites, 'accurate')

        assert estimate.avg_compressed_size == 200
        assert estimate.avg_uncompressed_size == 2000
        assert estimate.avg_compression_ratio == pytest.approx(90.0)


class TestOtherSources:
    """Test manual and backup-based estimates."""

    def test_manual(self):
        estimate = CapacityEstimator().estimate_from_manual(125 * MB, 40)

        assert estimate.method == 'manual'
        assert estimate.sites_scanned == 40
        assert estimate.per_site_hot == 125 * MB * 14

    def test_manual_requires_site_count(self):
        with pytest.raises(EstimationError):
            CapacityEstimator().estimate_from_manual(125 * MB, 0)

    def test_from_backup(self):
        hot = MagicMock()
        hot.head_object.return_value = StorageObject(
            'backups/a/a-1.tgz', 50 * MB, datetime(2024, 1, 1, tzinfo=timezone.utc)
        )

        estimate = CapacityEstimator(hot=hot).estimate_from_backup('backups/a/a-1.tgz', site_count=3)

        assert estimate.method == 'from-backup'
        assert estimate.avg_compressed_size == 50 * MB
        assert estimate.fleet_hot == 50 * MB * 14 * 3

    def test_from_backup_missing_object(self):
        hot = MagicMock()
        hot.head_object.side_effect = StorageError("Object not found: x")

        with pytest.raises(EstimationError):
            CapacityEstimator(hot=hot).estimate_from_backup('x')

    def test_from_backup_without_hot_client(self):
        with pytest.raises(ConfigurationError):
            CapacityEstimator().estimate_from_backup('x')
