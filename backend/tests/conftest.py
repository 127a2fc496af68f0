"""
Shared fixtures for the bulk job test suite.

Provides:
- An isolated SQLite database per test (file-backed so that several
  sessions can see each other's commits)
- An in-memory Redis double
- A controllable clock
- ``RecordingKind``: a job kind that creates one product per item and lets
  tests inject failures and control requests
"""

import os
import tempfile

_TEST_ROOT = tempfile.mkdtemp(prefix="bulkops-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_ROOT}/default.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("UPLOADS_DIR", os.path.join(_TEST_ROOT, "uploads"))
os.environ.setdefault("ENVIRONMENT", "test")

import csv
import math
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from bulkops.core.config import get_settings
from bulkops.core.exceptions import InputValidationError, ItemValidationError
from bulkops.db.models.product import Product
from bulkops.db.session import build_engine, init_db
from bulkops.jobs.base import Capability, ChunkResult, JobKind, Rollbackable
from bulkops.jobs.registry import register_kind, unregister_kind
from bulkops.services.job_lock import RELEASE_SCRIPT, RENEW_SCRIPT
from bulkops.services.job_runner import JobRunner
from bulkops.services.rate_limiter import CHECK_WINDOW_SCRIPT


# =============================================================================
# Doubles
# =============================================================================


class FakeRedis:
    """Just enough of redis-py (decode_responses=True) for the job framework.

    Keys never expire on their own; TTLs are only recorded so tests can
    assert on them. Registered Lua scripts run as their Python equivalents in
    ``SCRIPT_HANDLERS``; each call is one uninterrupted step, as in Redis.
    ``on_publish`` is called after every publish.
    """

    def __init__(self):
        self.store = {}
        self.hashes = {}
        self.lists = {}
        self.ttls = {}
        self.published = []
        self.fail_publish = False
        self.on_publish = None
        self.script_calls = 0

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value if isinstance(value, str) else str(value)
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            for space in (self.store, self.hashes, self.lists):
                if key in space:
                    del space[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    def ttl(self, key):
        if key not in self.store and key not in self.hashes:
            return -2
        return self.ttls.get(key, -1)

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hset(self, key, field=None, value=None, mapping=None):
        bucket = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        for name, item in items.items():
            bucket[name] = str(item)
        return len(items)

    def hincrby(self, key, field, amount=1):
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, 0)) + amount)
        return int(bucket[field])

    def llen(self, key):
        return len(self.lists.get(key, []))

    def publish(self, channel, message):
        if self.fail_publish:
            raise RedisConnectionError("broker unavailable")
        self.published.append((channel, message))
        if self.on_publish is not None:
            self.on_publish(channel, message)
        return 1

    def register_script(self, source):
        handler = SCRIPT_HANDLERS[source]

        def run(keys=(), args=(), client=None):
            self.script_calls += 1
            return handler(self, list(keys), [str(arg) for arg in args])

        return run


def _release_lock(fake, keys, args):
    if fake.store.get(keys[0]) == args[0]:
        return fake.delete(keys[0])
    return 0


def _renew_lock(fake, keys, args):
    if fake.store.get(keys[0]) == args[0]:
        return fake.expire(keys[0], int(args[1]))
    return 0


def _check_window(fake, keys, args):
    key = keys[0]
    now, limit, window = float(args[0]), int(args[1]), float(args[2])
    bucket = fake.hashes.get(key)
    if not bucket or now >= float(bucket["window_start"]) + float(bucket["window"]):
        fake.hashes[key] = {
            "window_start": args[0],
            "count": "1",
            "limit": args[1],
            "window": args[2],
        }
        fake.ttls[key] = math.ceil(window)
        return [1, 1, args[0], args[2]]
    count = int(bucket["count"])
    if count < limit:
        count += 1
        bucket["count"] = str(count)
        return [1, count, bucket["window_start"], bucket["window"]]
    return [0, count, bucket["window_start"], bucket["window"]]


SCRIPT_HANDLERS = {
    RELEASE_SCRIPT: _release_lock,
    RENEW_SCRIPT: _renew_lock,
    CHECK_WINDOW_SCRIPT: _check_window,
}


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class QuietMonitor:
    """Resource monitor that never reports pressure."""

    last_check_sampled = True

    def check(self):
        return False

    def metrics(self):
        return {}


class ScriptedMonitor:
    """Returns the queued throttle signals in order, then False."""

    def __init__(self, signals, sampled=True):
        self.signals = list(signals)
        self.last_check_sampled = sampled
        self.calls = 0

    def check(self):
        self.calls += 1
        return self.signals.pop(0) if self.signals else False

    def metrics(self):
        return {"memory_mb": 900.0, "cpu_percent": 95.0}


class RecordingKind(JobKind, Rollbackable):
    """Creates one product per item.

    ``fail_once`` maps the position of a chunk's first item to an exception
    raised the first time that chunk is applied. ``on_item`` is called with
    every position as it is read and ``on_count`` (if set) when the items are
    counted. ``invalid_positions`` are rejected by
    ``validate_item``; ``fail_compensation_steps`` make ``compensate`` raise.
    """

    name = "recording"
    capabilities = frozenset({Capability.ROLLBACKABLE, Capability.RESUMABLE})

    def __init__(self, total=0):
        self.total = total
        self.fail_once = {}
        self.on_item = None
        self.on_count = None
        self.invalid_positions = set()
        self.fail_compensation_steps = set()
        self.applied_chunks = []
        self.compensated = []
        self.result_checks = []

    def preflight(self, input_reference):
        if input_reference == "missing":
            raise InputValidationError("Input 'missing' does not exist")

    def count_items(self, input_reference, session):
        if self.on_count is not None:
            self.on_count()
        return self.total

    def iter_items(self, input_reference, session, offset=0):
        for position in range(offset, self.total):
            if self.on_item is not None:
                self.on_item(position)
            yield {"position": position, "sku": f"SKU-{position:05d}"}

    def validate_item(self, item, position):
        if position in self.invalid_positions:
            raise ItemValidationError(f"Item {position} rejected", item=item)
        return item

    def apply_chunk(self, items, session):
        if items and items[0]["position"] in self.fail_once:
            raise self.fail_once.pop(items[0]["position"])
        products = [Product(sku=item["sku"], name=f"Item {item['position']}") for item in items]
        session.add_all(products)
        session.flush()
        self.applied_chunks.append([item["position"] for item in items])
        return ChunkResult(
            stats={"created": len(products)},
            compensations=[
                {
                    "operation": "delete_products",
                    "target": "products",
                    "data": {"ids": [p.id for p in products]},
                }
            ],
        )

    def validate_result(self, session, stats):
        self.result_checks.append(dict(stats))

    def compensate(self, descriptor, session):
        if descriptor["step"] in self.fail_compensation_steps:
            raise RuntimeError(f"cannot undo step {descriptor['step']}")
        for product_id in descriptor["data"]["ids"]:
            product = session.get(Product, product_id)
            if product is not None:
                session.delete(product)
        session.flush()
        self.compensated.append(descriptor["step"])


class PlainKind(RecordingKind):
    """Same behaviour, but neither resumable nor rollbackable."""

    name = "plain"
    capabilities = frozenset()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=True)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_kind():
    kind = register_kind(RecordingKind(total=50))
    yield kind
    unregister_kind(kind.name)


@pytest.fixture
def plain_kind():
    kind = register_kind(PlainKind(total=20))
    yield kind
    unregister_kind(kind.name)


@pytest.fixture
def scheduled_retries():
    return []


@pytest.fixture
def make_runner(session_factory, redis, settings, scheduled_retries):
    """Build a runner wired to the test database and Redis double."""

    def _make(monitor=None, retry_scheduler="default"):
        if retry_scheduler == "default":
            retry_scheduler = lambda job_id, delay: scheduled_retries.append((job_id, delay))  # noqa: E731
        return JobRunner(
            session_factory,
            redis,
            settings=settings,
            retry_scheduler=retry_scheduler,
            monitor_factory=lambda config: monitor or QuietMonitor(),
        )

    return _make


@pytest.fixture
def uploads_dir(settings):
    path = Path(settings.uploads_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def write_csv(uploads_dir, request):
    """Write rows (first row is the header) into the uploads directory."""
    created = []

    def _write(name, rows):
        path = uploads_dir / f"{request.node.name}-{name}"
        with path.open("w", encoding="utf-8", newline="") as handle:
            csv.writer(handle).writerows(rows)
        created.append(path)
        return path

    yield _write
    for path in created:
        path.unlink(missing_ok=True)


def product_count(session):
    return session.scalar(select(func.count(Product.id)))
