import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flowkernel.config import Settings  # noqa: E402
from flowkernel.service.builtin_handlers import register_builtin_handlers  # noqa: E402
from flowkernel.service.engine import FlowEngine  # noqa: E402
from flowkernel.service.events import EventBus  # noqa: E402
from flowkernel.service.registry import PluginRegistry  # noqa: E402
from flowkernel.service.runtime import reset_runtime_for_tests  # noqa: E402
from flowkernel.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Fast settings: no retry backoff, short timeouts and grace period."""
    return Settings(
        default_node_timeout_ms=2000,
        default_backoff_ms=0,
        cancel_grace_ms=200,
        test_mode=True,
    )


@pytest.fixture
def registry():
    return register_builtin_handlers(PluginRegistry())


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def engine(registry, events, settings):
    return FlowEngine(MemoryStore(), registry, events=events, settings=settings)


@pytest.fixture
def recorded(events):
    """Every event emitted on the test bus, as dicts, in emission order."""
    seen = []
    events.subscribe(lambda event: seen.append(event.to_dict()))
    return seen


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
