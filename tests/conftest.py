"""
Pytest configuration and fixtures
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional
from unittest.mock import Mock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from core.exceptions import NetworkError
from core.metrics import MetricsRecorder, MetricsBackend
from discovery.queue import MessageQueue
from discovery.storage import ObjectStore
from models.base import Base
from schemas.feed import ChangeRecord, FeedBatch

import models.checkpoint  # noqa: F401
import models.discovery_run  # noqa: F401
import models.deferred_version  # noqa: F401

PUBLISHED_AT = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite engine, one database per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'discovery.db'}",
        echo=False,
        poolclass=NullPool,  # Each connection is opened on the loop that uses it
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# In-memory collaborators
# ============================================================================

class InMemoryObjectStore(ObjectStore):
    """Object store backed by a dict; keys listed in ``fail_keys`` reject writes"""

    def __init__(self, bucket: str = "staging-bucket"):
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.metadata: Dict[str, Dict[str, str]] = {}
        self.fail_keys = set()
        self.puts = 0

    async def put_object(self, key, body, content_type="application/octet-stream", metadata=None):
        if key in self.fail_keys:
            raise IOError(f"write refused for {key}")
        self.puts += 1
        self.objects[key] = body
        self.metadata[key] = metadata or {}

    async def get_object(self, key):
        return self.objects.get(key)


class InMemoryQueue(MessageQueue):
    """Collects message bodies; ``fail_after`` makes later sends fail"""

    def __init__(self, queue_url: str = "https://sqs.test/queue", fail_after: Optional[int] = None):
        self.queue_url = queue_url
        self.messages: List[str] = []
        self.fail_after = fail_after

    async def send(self, body):
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise ConnectionError("queue unavailable")
        self.messages.append(body)
        return f"msg-{len(self.messages)}"


class ListFeed:
    """Change feed over a fixed list of records"""

    def __init__(self, records: List[ChangeRecord]):
        self.records = sorted(records, key=lambda r: r.sequence_id)
        self.reads: List[Optional[int]] = []

    async def read(self, position, max_batch):
        self.reads.append(position)
        after = [r for r in self.records if position is None or r.sequence_id > position]
        return FeedBatch(records=after[:max_batch])


class TarballHttp:
    """Serves tarball bytes by URL; unknown URLs fail like an unreachable origin"""

    def __init__(self):
        self.tarballs: Dict[str, bytes] = {}
        self.requests: List[str] = []

    def add(self, url: str, data: bytes) -> None:
        self.tarballs[url] = data

    async def get(self, url, params=None, headers=None):
        self.requests.append(url)
        if url not in self.tarballs:
            raise NetworkError("Network error after 3 attempts", context={"url": url})
        return Mock(content=self.tarballs[url], status_code=200)


class RecordingBackend(MetricsBackend):

    def __init__(self):
        self.published = []

    async def publish(self, namespace, datapoints, dimensions):
        self.published.append((namespace, list(datapoints), dict(dimensions)))


class ManualClock:
    """Monotonic clock advanced by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def tarball_url(name: str, version: str) -> str:
    basename = name.rsplit("/", 1)[-1]
    return f"https://registry.test/{name}/-/{basename}-{version}.tgz"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def message_queue():
    return InMemoryQueue()


@pytest.fixture
def tarball_http():
    return TarballHttp()


@pytest.fixture
def metrics_backend():
    return RecordingBackend()


@pytest.fixture
def metrics(metrics_backend):
    return MetricsRecorder("RegistryDiscovery", backend=metrics_backend)


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def list_feed():
    return ListFeed


@pytest.fixture
def make_record():
    """Builds change records; relevant (jsii + cdk keyword) by default"""

    def _make(
        sequence_id: int,
        name: Optional[str] = None,
        version: str = "1.0.0",
        keywords=("cdk",),
        jsii: bool = True,
        published_at: Optional[datetime] = PUBLISHED_AT,
        with_tarball: bool = True,
        integrity: Optional[str] = None,
        deleted: bool = False,
    ) -> ChangeRecord:
        name = name or f"pkg-{sequence_id}"
        dist = {}
        if with_tarball:
            dist["tarball"] = tarball_url(name, version)
        if integrity:
            dist["integrity"] = integrity
        payload = {"name": name, "version": version, "dist": dist}
        if keywords is not None:
            payload["keywords"] = list(keywords)
        if jsii:
            payload["jsii"] = {"outdir": "dist", "targets": {}}
        return ChangeRecord(
            sequence_id=sequence_id,
            name=name,
            version=version,
            published_at=published_at,
            deleted=deleted,
            payload=payload,
        )

    return _make


@pytest.fixture
def serve_tarballs(tarball_http):
    """Registers tarball bytes for records so their staging succeeds"""

    def _serve(*records: ChangeRecord) -> None:
        for record in records:
            data = f"tarball of {record.name}@{record.version}".encode()
            tarball_http.add(tarball_url(record.name, record.version), data)

    return _serve


@pytest.fixture
def later():
    return lambda **kwargs: PUBLISHED_AT + timedelta(**kwargs)
