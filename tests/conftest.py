"""Shared pytest fixtures."""

import sys
from pathlib import Path

import pytest

# Make `tests.helpers` importable regardless of how pytest is invoked
base_dir = str(Path(__file__).parent.parent)
if base_dir not in sys.path:
    sys.path.insert(0, base_dir)

from tests.helpers import FIXED_CLOCK, build_clinic_store, make_clinic_contract  # noqa: E402


@pytest.fixture
def contract():
    return make_clinic_contract()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_CLOCK


@pytest.fixture
def store():
    """Store with three migratable doctors and no patients."""
    return build_clinic_store(doctor_ids=[1, 2, 3])


@pytest.fixture
def connections(store):
    manager = store.connection_manager()
    yield manager
    manager.close()
