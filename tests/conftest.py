"""
Shared pytest fixtures for the ArcVault test suite.

Unit tests run against the in-memory gateway with a controllable clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from arcvault.core.models import RecordSpec, StoreSpec
from arcvault.core.repository import Repository
from arcvault.core.transfer import TransferCoordinator
from arcvault.storage.memory_store import MemoryGateway


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> MemoryGateway:
    """Fresh in-memory gateway; short lock timeout so contention tests fail fast."""
    gw = MemoryGateway(lock_timeout=0.2)
    gw.setup()
    return gw


@pytest.fixture
def repo(gateway: MemoryGateway, clock: FakeClock) -> Repository:
    return Repository(gateway, clock=clock)


@pytest.fixture
def transfer(repo: Repository) -> TransferCoordinator:
    return TransferCoordinator(repo)


@pytest.fixture
def store(repo: Repository):
    return repo.create_store(StoreSpec(title="Personal"))


@pytest.fixture
def make_record(repo: Repository, clock: FakeClock):
    """
    Factory creating a record that expires `ttl` seconds from now
    (never, when ttl is None).
    """
    def _make(store_id, title="secret", buffer=b"\x00cipher", ttl=None, **kwargs):
        expires_at = clock() + timedelta(seconds=ttl) if ttl is not None else None
        return repo.create_record(
            store_id,
            RecordSpec(title=title, buffer=buffer, expires_at=expires_at, **kwargs)
        )

    return _make
