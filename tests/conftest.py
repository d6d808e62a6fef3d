"""Pytest configuration for training_provisioner tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from training_provisioner.app.inmemory import (
    InMemoryConfigResolver,
    InMemoryProvisioner,
    InMemoryRecordStore,
    StaticLivenessProbe,
)


@pytest.fixture
def store():
    """Empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def provisioner():
    return InMemoryProvisioner()


@pytest.fixture
def config_resolver():
    return InMemoryConfigResolver()


@pytest.fixture
def probe():
    """Probe that sees no machine until a test adds addresses to ``reachable``."""
    return StaticLivenessProbe()
