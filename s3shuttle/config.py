"""
Configuration: the config directory, host aliases with their credentials,
and the global command line options.

config.json looks like:

    {
      "version": "1",
      "hosts": {
        "play": {"url": "https://play.min.io", "accessKey": "...",
                 "secretKey": "...", "api": "S3v4", "region": "us-east-1"}
      }
    }

It holds secrets, so it must be owned by the user and chmod 600.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from .canonical import guess_region_from_host
from .errors import ConfigurationError
from .log import setup_logging
from .signing import RequestAuthenticator, parse_signature_version

CONFIG_DIR_ENV = 'S3SHUTTLE_CONFIG_DIR'
CONFIG_VERSION = '1'
CONFIG_FILE = 'config.json'


def get_config_dir(override: Optional[str] = None) -> str:
    if override:
        return os.path.abspath(os.path.expanduser(override))
    env = os.environ.get(CONFIG_DIR_ENV)
    if env:
        return os.path.abspath(os.path.expanduser(env))
    return os.path.join(os.path.expanduser('~'), '.s3shuttle')


@dataclass(frozen=True)
class GlobalOptions:
    """
    Global command line flags. Sessions capture them at creation so a
    resumed copy behaves like the original one; apply() puts them in effect.
    """
    quiet: bool = False
    debug: bool = False
    json: bool = False
    no_color: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {'quiet': self.quiet, 'debug': self.debug, 'json': self.json, 'noColor': self.no_color}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'GlobalOptions':
        data = data or {}
        return cls(quiet=bool(data.get('quiet', False)), debug=bool(data.get('debug', False)),
                   json=bool(data.get('json', False)), no_color=bool(data.get('noColor', False)))

    @property
    def console_level(self) -> int:
        if self.debug:
            return logging.DEBUG
        if self.quiet:
            return logging.WARNING
        return logging.INFO

    def apply(self, log_file: Optional[str] = None) -> None:
        setup_logging(self.console_level, log_file)


class HostConfig:
    """Endpoint and credentials of one alias"""

    def __init__(self, url: str, access_key: str = '', secret_key: str = '',
                 api: str = '', region: str = ''):
        self.url = url.rstrip('/')
        self.access_key = access_key
        self.secret_key = secret_key
        self.api = parse_signature_version(api)
        self.region = region or guess_region_from_host(urlsplit(self.url).hostname or '')

    @classmethod
    def from_dict(cls, alias: str, data: Dict[str, Any]) -> 'HostConfig':
        if not isinstance(data, dict) or not data.get('url'):
            raise ConfigurationError(f"Host '{alias}' has no url.")
        return cls(url=data['url'], access_key=data.get('accessKey', ''),
                   secret_key=data.get('secretKey', ''), api=data.get('api', ''),
                   region=data.get('region', ''))

    def authenticator(self) -> RequestAuthenticator:
        return RequestAuthenticator(self.access_key, self.secret_key, self.region, self.api)


def check_private_file(path: str) -> None:
    """Refuse credential files readable by others or owned by someone else"""
    st = os.stat(path)
    if hasattr(os, 'getuid') and st.st_uid != os.getuid():
        raise ConfigurationError(f"Refusing to read credentials from {path}: not owned by current user.")
    if (st.st_mode & 0o077) != 0:
        raise ConfigurationError(f"Refusing to read credentials from {path}: file must have mode 600.")


class Config:
    def __init__(self, config_dir: str, hosts: Optional[Dict[str, HostConfig]] = None):
        self.config_dir = config_dir
        self.hosts = hosts or {}

    @property
    def session_dir(self) -> str:
        return os.path.join(self.config_dir, 'session')

    @property
    def share_dir(self) -> str:
        return os.path.join(self.config_dir, 'share')

    @classmethod
    def load(cls, config_dir: Optional[str] = None) -> 'Config':
        config_dir = get_config_dir(config_dir)
        path = os.path.join(config_dir, CONFIG_FILE)
        if not os.path.isfile(path):
            logging.debug(f"Config file not found at {path}")
            return cls(config_dir)

        check_private_file(path)
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Unable to read {path}: {e}") from e
        version = str(data.get('version', ''))
        if version != CONFIG_VERSION:
            raise ConfigurationError(f"Unsupported config version '{version}' in {path}.")

        hosts = {alias: HostConfig.from_dict(alias, entry)
                 for alias, entry in (data.get('hosts') or {}).items()}
        logging.debug(f"Loaded {len(hosts)} host(s) from {path}")
        return cls(config_dir, hosts)

    def host_for_url(self, url: str) -> Optional[HostConfig]:
        """Host entry whose endpoint serves url, including bucket.<endpoint> hosts"""
        parts = urlsplit(url)
        for host in self.hosts.values():
            hp = urlsplit(host.url)
            if hp.scheme != parts.scheme:
                continue
            if parts.netloc == hp.netloc or parts.netloc.endswith('.' + hp.netloc):
                return host
        return None

    def expand_alias(self, url: str):
        """
        Turn 'alias/bucket/key' into (HostConfig, 'https://endpoint/bucket/key').
        Returns (None, url) for anything that is not an alias.
        """
        if '://' in url:
            return self.host_for_url(url), url
        if url.startswith(('/', '.', '~')) or os.path.isabs(url):
            return None, url
        alias, _, rest = url.partition('/')
        host = self.hosts.get(alias)
        if host is None:
            return None, url
        return host, f"{host.url}/{rest}" if rest else host.url + '/'
