from __future__ import annotations

import pytest

from restobot.adapters.store import InMemoryTenantStore
from tests.fakes import FIXED_NOW, RecordingStore, seed_store


@pytest.fixture()
def store() -> InMemoryTenantStore:
    return seed_store(InMemoryTenantStore())


@pytest.fixture()
def recording_store() -> RecordingStore:
    store = seed_store(RecordingStore())
    store.reset_calls()
    return store


@pytest.fixture()
def clock():
    return lambda: FIXED_NOW
