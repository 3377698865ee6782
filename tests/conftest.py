import logging
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from doorbell_core import addon_config  # noqa: E402
from tests.helpers.fakes import FakeDispatcher, HaltRecorder  # noqa: E402
from tests.helpers.fakes_ble import FakeBleAdapter  # noqa: E402


@pytest.fixture
def adapter():
    return FakeBleAdapter()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def halt():
    return HaltRecorder()


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch):
    """Keep host config files and DOORBELL_* variables out of every test."""
    for name in list(addon_config._SOURCES):
        env_key = addon_config._SOURCES[name][1]
        if env_key:
            monkeypatch.delenv(env_key, raising=False)
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    addon_config.CONFIG.clear()
    yield
    addon_config.CONFIG.clear()


@pytest.fixture(autouse=True)
def _reset_bridge_logger():
    log = logging.getLogger("doorbell_core")
    saved = list(log.handlers), log.level, log.propagate
    yield
    for h in list(log.handlers):
        if h not in saved[0]:
            log.removeHandler(h)
            h.close()
    log.setLevel(saved[1])
    log.propagate = saved[2]
