import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Keep file persistence and .env lookups away from the developer's state
_test_tmp_dir = tempfile.mkdtemp(prefix="authsync_test_")
os.environ.setdefault("AUTHSYNC_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import structlog  # noqa: E402

import authsync.logging  # noqa: E402,F401
from authsync.config import reset_settings_cache  # noqa: E402

# Resolve stdout on every call so capsys swaps are honoured
structlog.configure(cache_logger_on_first_use=False)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
