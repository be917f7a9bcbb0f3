"""
Pytest configuration and fixtures for all tests.
"""

import os
import sys
import pytest

# Add src to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Set up test environment variables before importing any modules
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('LOG_LEVEL', 'INFO')
os.environ.setdefault('PERSISTENCE_BACKEND', 'memory')
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-west-2')

from domain.stages import build_default_pipeline
from services.persistence import InMemoryStorageBackend, MessagePersistenceService
from services.stats import Meter


@pytest.fixture
def meter():
    """Fresh, isolated meter."""
    return Meter()


@pytest.fixture
def backend():
    """Empty in-memory storage backend."""
    return InMemoryStorageBackend()


@pytest.fixture
def persistence(backend):
    """Persistence service over the in-memory backend."""
    return MessagePersistenceService(backend)


@pytest.fixture
def default_pipeline():
    """validate -> enrich -> persist-marker."""
    return build_default_pipeline()
