import pytest

from remote_bridge.cache import EditOverrides, WriteCache
from remote_bridge.executor import SentinelExecutor
from remote_bridge.handlers import ToolBridge
from remote_bridge.paths import PathResolver

from tests.fakes import FakeChannel, FakeClock, FakeFiles

REMOTE_ROOT = "/srv/app"
LOCAL_ROOT = "/home/dev/mirror"


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def files():
    return FakeFiles()


@pytest.fixture
def resolver():
    return PathResolver(REMOTE_ROOT, host="build-box", local_root=LOCAL_ROOT)


@pytest.fixture
def channel(files):
    return FakeChannel(files)


@pytest.fixture
def executor(files, channel, clock):
    def sleep(seconds):
        clock.advance(seconds)

    return SentinelExecutor(files, channel, host="build-box", sleep=sleep, clock=clock)


@pytest.fixture
def make_bridge(resolver, files, executor, clock):
    def factory(**kwargs):
        kwargs.setdefault("write_cache", WriteCache(clock=clock))
        kwargs.setdefault("overrides", EditOverrides(clock=clock))
        return ToolBridge(resolver, kwargs.pop("files", files), kwargs.pop("executor", executor), **kwargs)

    return factory


@pytest.fixture
def bridge(make_bridge):
    return make_bridge()
