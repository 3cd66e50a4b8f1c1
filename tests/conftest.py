import os

import pytest
import stamina

os.environ.setdefault("ENV", "pytest")

from ai_proxy.common.config import get_settings


@pytest.fixture(autouse=True)
def _test_settings():
    """No retry back-off, and settings re-read from the environment for every test."""
    stamina.set_testing(True)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    stamina.set_testing(False)
