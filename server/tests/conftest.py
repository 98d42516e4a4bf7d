import sys
import os

import pytest

# Add server/ to path so the pointflow package can be imported with relative imports intact
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from pointflow.policy_cache import policy_cache


@pytest.fixture(autouse=True)
def reset_policy_cache():
    """The effective matrix is process-wide; every test starts from the defaults."""
    policy_cache.reset()
    yield
    policy_cache.reset()
