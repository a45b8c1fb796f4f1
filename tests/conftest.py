"""Shared test fixtures and configuration for coordinator tests."""
import asyncio
import os

# must be set before constants is imported
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RETRY_BACKOFF_SECONDS", "0.01")

import pytest

from backend import InMemoryBackend
from coordinator import build_coordinator
from security import BcryptHasher

PASSWORD = "Secret123"


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 10) -> None:
    """Let background tasks (writers, lazy expiry) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture(scope="session")
def hasher():
    return BcryptHasher(rounds=4)


@pytest.fixture
def coordinator(backend, hasher, clock):
    return build_coordinator(backend, hasher=hasher, clock=clock)
