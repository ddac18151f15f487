# Test fixtures for the retrieval engine (in-memory doubles, no live Qdrant)

import os
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENV"] = "development"

from gruenerator_retrieval.shared.config import RetrievalConfig  # noqa: E402


@pytest.fixture
def default_config():
    """Built-in defaults, independent of config/*.yaml and the environment."""
    return RetrievalConfig()


@pytest.fixture
def no_context_config():
    return RetrievalConfig().with_overrides({"context": {"enabled": False}})
