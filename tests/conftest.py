import pytest

from s3shuttle.config import Config, GlobalOptions


@pytest.fixture
def session_root(tmp_path):
    return str(tmp_path / 'session')


@pytest.fixture
def options():
    return GlobalOptions(debug=True)


@pytest.fixture
def config(tmp_path):
    return Config(str(tmp_path / 'config'))
