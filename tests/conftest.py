"""Root conftest for test suite.

Auto-skips slow tests. Run them explicitly with: pytest -m slow
"""

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless explicitly requested via -m."""
    markexpr = config.getoption("-m", default="")
    if "slow" in markexpr:
        return

    skip_slow = pytest.mark.skip(
        reason="slow tests skipped by default. Run with: pytest -m slow"
    )
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)
