import pytest

from finnacli import AppConfig, Repl, SessionState
from tests.helpers import FakeApi, FakeLauncher


@pytest.fixture()
def api():
    return FakeApi()


@pytest.fixture()
def launcher():
    return FakeLauncher()


@pytest.fixture()
def output():
    return []


@pytest.fixture()
def repl(api, launcher, output):
    return Repl(api, launcher, out=output.append)


@pytest.fixture()
def state():
    return SessionState(config=AppConfig())
