import os
import pytest
from cogtiles.config import get_settings

def pytest_configure():
    os.environ.setdefault("COGTILES_LOG_LEVEL", "DEBUG")

@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # evita fuga de estado entre tests
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()

def pytest_collection_modifyitems(items):
    for item in items:
        if "integration" in item.keywords and os.environ.get("CI") == "true":
            item.add_marker(pytest.mark.slow)
