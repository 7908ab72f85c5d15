"""
Shared URLs: pre-signed downloads and POST-policy uploads, plus a small
record of what was shared so that still-valid shares can be listed later.
"""

import datetime
import json
import logging
import os
import re
from typing import Dict, List, Optional, Tuple

from .errors import ConfigurationError, S3ShuttleError

logger = logging.getLogger(__name__)

SHARE_DB_VERSION = '1'
MAX_EXPIRY = 7 * 24 * 3600
DEFAULT_EXPIRY = '168h'

_DURATION_RE = re.compile(r'(\d+)([dhms])')
_UNIT_SECONDS = {'d': 86400, 'h': 3600, 'm': 60, 's': 1}


def parse_expiry(value: str) -> int:
    """'7d', '168h', '1h30m', '90s' or plain seconds -> seconds, at most 7 days"""
    value = value.strip().lower()
    if value.isdigit():
        seconds = int(value)
    else:
        pos = 0
        seconds = 0
        for m in _DURATION_RE.finditer(value):
            if m.start() != pos:
                break
            seconds += int(m.group(1)) * _UNIT_SECONDS[m.group(2)]
            pos = m.end()
        if pos == 0 or pos != len(value):
            raise ConfigurationError(f"Invalid expiry '{value}', use e.g. 7d, 168h or 30m.")
    if seconds < 1 or seconds > MAX_EXPIRY:
        raise ConfigurationError(f"Expiry must be between 1 second and 7 days, got '{value}'.")
    return seconds


def format_duration(delta: datetime.timedelta) -> str:
    seconds = max(0, int(delta.total_seconds()))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    if days:
        return f"{days}d{hours}h{minutes}m"
    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    return f"{minutes}m{seconds}s"


def curl_command(url: str, fields: Dict[str, str], filename: str = '<FILE>') -> str:
    """curl invocation that performs a POST policy upload"""
    parts = ['curl']
    for k, v in fields.items():
        parts.append(f"-F {k}={v}")
    parts.append(f"-F file=@{filename}")
    parts.append(url)
    return ' '.join(parts)


class ShareDB:
    """
    Shares recorded in one JSON file, keyed by the shared URL (or the curl
    command for uploads).
    """

    def __init__(self, path: str):
        self.path = path
        self.shares: Dict[str, Dict] = {}

    def load(self) -> 'ShareDB':
        if not os.path.isfile(self.path):
            return self
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise S3ShuttleError(f"Unable to read shares from {self.path}: {e}") from e
        if str(data.get('version')) != SHARE_DB_VERSION:
            logger.warning(f"Ignoring shares in {self.path}: unsupported version.")
            return self
        self.shares = dict(data.get('shares') or {})
        return self

    def save(self) -> None:
        os.makedirs(os.path.dirname(self.path), mode=0o700, exist_ok=True)
        tmp = self.path + '.tmp'
        with open(tmp, 'w') as f:
            json.dump({'version': SHARE_DB_VERSION, 'shares': self.shares}, f, indent=2)
        os.replace(tmp, self.path)

    def add(self, share_url: str, object_url: str, expiry: int, content_type: str = '',
            now: Optional[datetime.datetime] = None) -> None:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        self.shares[share_url] = {
            'url': object_url,
            'date': now.isoformat(),
            'expiry': expiry,
            'contentType': content_type,
        }

    def active(self, now: Optional[datetime.datetime] = None) -> List[Tuple[str, Dict, datetime.timedelta]]:
        """Shares that have not expired yet, with time left. Expired ones are dropped."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        result = []
        for share_url, entry in list(self.shares.items()):
            shared_at = datetime.datetime.fromisoformat(entry['date'])
            left = shared_at + datetime.timedelta(seconds=entry['expiry']) - now
            if left.total_seconds() <= 0:
                del self.shares[share_url]
                continue
            result.append((share_url, entry, left))
        return result


def get_share_db(share_dir: str, kind: str) -> ShareDB:
    if kind not in ('download', 'upload'):
        raise ConfigurationError(f"Unknown share type '{kind}', use 'download' or 'upload'.")
    return ShareDB(os.path.join(share_dir, f"{kind}s.json")).load()
