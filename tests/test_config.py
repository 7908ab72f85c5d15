import json
import logging
import os

import pytest

from s3shuttle.config import CONFIG_DIR_ENV, Config, GlobalOptions, HostConfig, get_config_dir
from s3shuttle.errors import ConfigurationError
from s3shuttle.signing import SIGNATURE_V2


def write_config(config_dir, data, mode=0o600):
    os.makedirs(config_dir, exist_ok=True)
    path = os.path.join(config_dir, 'config.json')
    with open(path, 'w') as f:
        json.dump(data, f)
    os.chmod(path, mode)
    return path


HOSTS = {
    'version': '1',
    'hosts': {
        'play': {'url': 'https://play.example.com/', 'accessKey': 'AK', 'secretKey': 'SK'},
        'old': {'url': 'http://localhost:9000', 'accessKey': 'AK2', 'secretKey': 'SK2',
                'api': 'S3v2', 'region': 'eu-west-1'},
    },
}


class TestConfigDir:
    def test_override_wins(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path / 'env'))
        assert get_config_dir(str(tmp_path / 'flag')) == str(tmp_path / 'flag')

    def test_environment(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path / 'env'))
        assert get_config_dir() == str(tmp_path / 'env')

    def test_default(self, monkeypatch) -> None:
        monkeypatch.delenv(CONFIG_DIR_ENV, raising=False)
        assert get_config_dir().endswith('.s3shuttle')


class TestConfigLoad:
    def test_missing_file(self, tmp_path) -> None:
        config = Config.load(str(tmp_path))
        assert config.hosts == {}
        assert config.session_dir == os.path.join(str(tmp_path), 'session')

    def test_hosts(self, tmp_path) -> None:
        write_config(str(tmp_path), HOSTS)
        config = Config.load(str(tmp_path))
        play = config.hosts['play']
        assert play.url == 'https://play.example.com'
        assert play.region == 'us-east-1'
        old = config.hosts['old']
        assert old.api == SIGNATURE_V2
        assert old.authenticator().region == 'eu-west-1'

    @pytest.mark.skipif(not hasattr(os, 'getuid'), reason='POSIX permissions')
    def test_refuses_readable_file(self, tmp_path) -> None:
        write_config(str(tmp_path), HOSTS, mode=0o644)
        with pytest.raises(ConfigurationError):
            Config.load(str(tmp_path))

    def test_unsupported_version(self, tmp_path) -> None:
        write_config(str(tmp_path), {'version': '9', 'hosts': {}})
        with pytest.raises(ConfigurationError):
            Config.load(str(tmp_path))

    def test_bad_signature_version(self) -> None:
        with pytest.raises(ConfigurationError):
            HostConfig.from_dict('x', {'url': 'https://h', 'api': 'S3v9'})

    def test_host_without_url(self) -> None:
        with pytest.raises(ConfigurationError):
            HostConfig.from_dict('x', {'accessKey': 'AK'})


class TestAliases:
    @pytest.fixture
    def config(self, tmp_path):
        write_config(str(tmp_path), HOSTS)
        return Config.load(str(tmp_path))

    def test_expand_alias(self, config) -> None:
        host, url = config.expand_alias('play/bucket/key.txt')
        assert host is config.hosts['play']
        assert url == 'https://play.example.com/bucket/key.txt'
        assert config.expand_alias('play')[1] == 'https://play.example.com/'

    def test_local_paths_are_not_aliases(self, config) -> None:
        assert config.expand_alias('/play/bucket') == (None, '/play/bucket')
        assert config.expand_alias('./play/bucket') == (None, './play/bucket')
        assert config.expand_alias('unknown/bucket') == (None, 'unknown/bucket')

    def test_host_for_url(self, config) -> None:
        assert config.host_for_url('http://localhost:9000/b/k') is config.hosts['old']
        assert config.host_for_url('https://bucket.play.example.com/k') is config.hosts['play']
        assert config.host_for_url('http://play.example.com/b') is None


class TestGlobalOptions:
    def test_round_trip(self) -> None:
        options = GlobalOptions(quiet=True, json=True, no_color=True)
        assert options.to_dict() == {'quiet': True, 'debug': False, 'json': True, 'noColor': True}
        assert GlobalOptions.from_dict(options.to_dict()) == options
        assert GlobalOptions.from_dict(None) == GlobalOptions()

    def test_console_level(self) -> None:
        assert GlobalOptions().console_level == logging.INFO
        assert GlobalOptions(quiet=True).console_level == logging.WARNING
        assert GlobalOptions(quiet=True, debug=True).console_level == logging.DEBUG
