"""
Unit tests for the package canary
"""

import json
import pytest
import httpx
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from core.exceptions import CanaryError
from core.metrics import MetricsRecorder
from discovery.canary import CanaryStateStore, PackageCanary, RegistryProbe, ReplicaView, UpstreamRelease
from discovery.constants import CanaryMetricName, canary_state_key
from discovery.http import ResilientHttpClient
from schemas.canary import CanaryPhase, CanaryState

PROBE = "construct-hub-probe"
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeProbe:
    """Visibility answers set by the test"""

    def __init__(self):
        self.latest = None
        self.in_replica = set()
        self.replica_modified = None
        self.in_catalog = set()

    async def upstream_latest(self, package_name):
        return self.latest

    async def replica_view(self, package_name, version):
        return ReplicaView(version in self.in_replica, self.replica_modified)

    async def catalog_has(self, package_name, version):
        return version in self.in_catalog


class WallClock:

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def canary_store(object_store):
    return CanaryStateStore(object_store, PROBE)


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def clock():
    return WallClock(T0)


@pytest.fixture
def canary_metrics(metrics_backend):
    return MetricsRecorder("RegistryDiscovery/PackageCanary", backend=metrics_backend,
                           dimensions={"PackageName": PROBE})


@pytest.fixture
def canary(canary_store, probe, canary_metrics, clock):
    return PackageCanary(PROBE, canary_store, probe, canary_metrics, clock=clock)


class TestPackageCanary:

    @pytest.mark.asyncio
    async def test_nothing_published_yet(self, canary, canary_metrics):
        state = await canary.tick()

        assert state.phase == CanaryPhase.NOT_YET_PUBLISHED
        assert state.version is None
        assert canary_metrics.values(CanaryMetricName.TRACKED_VERSION_COUNT) == [0.0]

    @pytest.mark.asyncio
    async def test_full_round_trip(self, canary, probe, clock, canary_metrics, canary_store, metrics_backend):
        probe.latest = UpstreamRelease("1.0.1", T0, T0)

        # Published upstream, the replica still holds a document modified 30s earlier
        probe.replica_modified = T0 - timedelta(seconds=30)
        clock.now = T0 + timedelta(seconds=10)
        state = await canary.tick()
        assert state.phase == CanaryPhase.PUBLISHED_UPSTREAM
        assert state.version == "1.0.1"
        assert canary_metrics.values(CanaryMetricName.DWELL_TIME) == [10_000.0]
        assert canary_metrics.values(CanaryMetricName.NPM_REPLICA_LAG) == [30_000.0]
        assert canary_metrics.values(CanaryMetricName.TRACKED_VERSION_COUNT) == [1.0]

        # Replica catches up after 70s
        probe.in_replica.add("1.0.1")
        probe.replica_modified = T0
        clock.now = T0 + timedelta(seconds=70)
        state = await canary.tick()
        assert state.phase == CanaryPhase.VISIBLE_IN_REPLICA
        assert state.dwell_time == timedelta(seconds=70)
        assert state.estimated_replica_lag_seconds == 30.0
        assert canary_metrics.values(CanaryMetricName.NPM_REPLICA_LAG) == [30_000.0, 0.0]
        assert canary_metrics.values(CanaryMetricName.DWELL_TIME) == [10_000.0, 70_000.0]

        # Catalog shows it after 5 minutes
        probe.in_catalog.add("1.0.1")
        clock.now = T0 + timedelta(seconds=300)
        state = await canary.tick()
        assert state.phase == CanaryPhase.VISIBLE_IN_CATALOG
        assert state.time_to_catalog == timedelta(seconds=300)
        assert canary_metrics.values(CanaryMetricName.TIME_TO_CATALOG) == [300_000.0]
        assert canary_metrics.values(CanaryMetricName.TRACKED_VERSION_COUNT)[-1] == 0.0

        # Next tick retires the version
        clock.now = T0 + timedelta(seconds=360)
        state = await canary.tick()
        assert state.phase == CanaryPhase.NOT_YET_PUBLISHED
        assert state.version is None
        assert state.retired_version == "1.0.1"

        # The retired version is never tracked again
        state = await canary.tick()
        assert state.phase == CanaryPhase.NOT_YET_PUBLISHED

        # Every tick flushed its own datapoints with the package dimension
        assert len(metrics_backend.published) == 5
        assert all(d == {"PackageName": PROBE} for _, _, d in metrics_backend.published)

    @pytest.mark.asyncio
    async def test_probe_version_timeline(self, canary, probe, clock, canary_metrics):
        probe.latest = UpstreamRelease("9.9.9-probe", T0, T0)

        # The replica still shows the previous probe version, published 5 minutes earlier
        probe.replica_modified = T0 - timedelta(minutes=5)
        clock.now = T0
        await canary.tick()

        probe.in_replica.add("9.9.9-probe")
        probe.replica_modified = T0
        clock.now = T0 + timedelta(minutes=5)
        state = await canary.tick()
        assert state.estimated_replica_lag_seconds == 300.0
        assert state.dwell_time == timedelta(minutes=5)
        assert canary_metrics.values(CanaryMetricName.NPM_REPLICA_LAG) == [300_000.0, 0.0]

        probe.in_catalog.add("9.9.9-probe")
        clock.now = T0 + timedelta(minutes=40)
        await canary.tick()
        assert canary_metrics.values(CanaryMetricName.TIME_TO_CATALOG) == [2_400_000.0]

        clock.now = T0 + timedelta(minutes=41)
        state = await canary.tick()
        assert state.version is None
        assert state.retired_version == "9.9.9-probe"

    @pytest.mark.asyncio
    async def test_state_persists_between_invocations(self, canary_store, probe, canary_metrics, clock, object_store):
        probe.latest = UpstreamRelease("2.0.0", T0, T0)
        clock.now = T0 + timedelta(seconds=5)
        await PackageCanary(PROBE, canary_store, probe, canary_metrics, clock=clock).tick()

        stored = json.loads(object_store.objects[canary_state_key(PROBE)])
        assert stored["version"] == "2.0.0"
        assert stored["phase"] == "published_upstream"

        # A fresh canary (cold start) resumes from the stored state
        probe.in_replica.add("2.0.0")
        clock.now = T0 + timedelta(seconds=45)
        state = await PackageCanary(PROBE, canary_store, probe, canary_metrics, clock=clock).tick()

        assert state.phase == CanaryPhase.VISIBLE_IN_REPLICA
        assert state.dwell_time == timedelta(seconds=45)

    @pytest.mark.asyncio
    async def test_newer_upstream_version_is_tracked_after_retirement(self, canary_store, probe, canary_metrics, clock):
        await canary_store.save(CanaryState(package_name=PROBE, retired_version="1.0.1"))
        probe.latest = UpstreamRelease("1.0.2", T0, T0)

        state = await PackageCanary(PROBE, canary_store, probe, canary_metrics, clock=clock).tick()

        assert state.version == "1.0.2"
        assert state.retired_version == "1.0.1"

    @pytest.mark.asyncio
    async def test_retirement_publishes_next_probe(self, canary_store, probe, canary_metrics, clock):
        publisher = AsyncMock()
        publisher.publish.return_value = "1.0.2"
        await canary_store.save(CanaryState(
            package_name=PROBE,
            version="1.0.1",
            phase=CanaryPhase.VISIBLE_IN_CATALOG,
            published_at=T0,
        ))

        await PackageCanary(PROBE, canary_store, probe, canary_metrics, publisher=publisher, clock=clock).tick()

        publisher.publish.assert_awaited_once_with(PROBE, "1.0.1")

    @pytest.mark.asyncio
    async def test_probe_failure_does_not_persist_state(self, canary_store, canary_metrics, clock):
        probe = FakeProbe()
        probe.latest = UpstreamRelease("1.0.1", T0, T0)
        probe.replica_view = AsyncMock(side_effect=CanaryError("Replica probe failed"))

        with pytest.raises(CanaryError):
            await PackageCanary(PROBE, canary_store, probe, canary_metrics, clock=clock).tick()

        # Nothing was persisted
        assert (await canary_store.load()).version is None


class TestCanaryStateStore:

    @pytest.mark.asyncio
    async def test_missing_state_starts_fresh(self, canary_store):
        state = await canary_store.load()

        assert state.package_name == PROBE
        assert state.phase == CanaryPhase.NOT_YET_PUBLISHED

    @pytest.mark.asyncio
    async def test_unreadable_state_starts_fresh(self, canary_store, object_store):
        object_store.objects[canary_state_key(PROBE)] = b"{not json"

        assert (await canary_store.load()).version is None

    @pytest.mark.asyncio
    async def test_store_failure_raises_canary_error(self):
        store = AsyncMock()
        store.get_object.side_effect = RuntimeError("AccessDenied")

        with pytest.raises(CanaryError):
            await CanaryStateStore(store, PROBE).load()


class TestRegistryProbe:

    def _probe(self, handler, catalog="https://catalog.test"):
        http = ResilientHttpClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), retry_delay=0)
        return RegistryProbe(http, "https://registry.test", "https://replica.test", catalog)

    @pytest.mark.asyncio
    async def test_upstream_latest(self):
        def handler(request):
            return httpx.Response(200, json={
                "dist-tags": {"latest": "1.0.1"},
                "time": {
                    "modified": "2024-03-01T12:05:00.000Z",
                    "1.0.0": "2024-02-01T00:00:00.000Z",
                    "1.0.1": "2024-03-01T12:00:00.000Z",
                },
            })

        release = await self._probe(handler).upstream_latest(PROBE)

        assert release == UpstreamRelease("1.0.1", T0, T0 + timedelta(minutes=5))

    @pytest.mark.asyncio
    async def test_upstream_modified_defaults_to_publish_time(self):
        def handler(request):
            return httpx.Response(200, json={
                "dist-tags": {"latest": "1.0.1"},
                "time": {"1.0.1": "2024-03-01T12:00:00.000Z"},
            })

        release = await self._probe(handler).upstream_latest(PROBE)

        assert release.modified_at == T0

    @pytest.mark.asyncio
    async def test_unreadable_upstream_time_is_a_canary_error(self):
        def handler(request):
            return httpx.Response(200, json={
                "dist-tags": {"latest": "1.0.1"},
                "time": {"1.0.1": "yesterday"},
            })

        with pytest.raises(CanaryError) as exc_info:
            await self._probe(handler).upstream_latest(PROBE)

        assert exc_info.value.context["probe"] == "upstream"
        assert exc_info.value.context["timestamp"] == "yesterday"

    @pytest.mark.asyncio
    async def test_unknown_package_has_no_latest(self):
        assert await self._probe(lambda r: httpx.Response(404)).upstream_latest(PROBE) is None

    @pytest.mark.asyncio
    async def test_replica_view(self):
        def handler(request):
            assert request.url.host == "replica.test"
            return httpx.Response(200, json={
                "versions": {"1.0.1": {}},
                "time": {"modified": "2024-03-01T12:00:00.000Z"},
            })

        probe = self._probe(handler)

        assert await probe.replica_view(PROBE, "1.0.1") == ReplicaView(True, T0)
        assert not (await probe.replica_view(PROBE, "1.0.2")).has_version

    @pytest.mark.asyncio
    async def test_missing_replica_document(self):
        view = await self._probe(lambda r: httpx.Response(404)).replica_view(PROBE, "1.0.1")

        assert view == ReplicaView(False, None)

    @pytest.mark.asyncio
    async def test_catalog_lookup(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(404 if "1.0.2" in request.url.path else 200, json={})

        probe = self._probe(handler)

        assert await probe.catalog_has(PROBE, "1.0.1")
        assert not await probe.catalog_has(PROBE, "1.0.2")
        assert paths[0] == f"/data/{PROBE}/v1.0.1/metadata.json"

    @pytest.mark.asyncio
    async def test_catalog_probe_requires_base_url(self):
        probe = self._probe(lambda r: httpx.Response(200), catalog=None)

        with pytest.raises(CanaryError):
            await probe.catalog_has(PROBE, "1.0.1")

    @pytest.mark.asyncio
    async def test_probe_errors_become_canary_errors(self):
        probe = self._probe(lambda r: httpx.Response(401))

        with pytest.raises(CanaryError) as exc_info:
            await probe.replica_view(PROBE, "1.0.1")

        assert exc_info.value.context["probe"] == "replica"
