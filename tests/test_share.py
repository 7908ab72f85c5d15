import datetime

import pytest

from s3shuttle.errors import ConfigurationError
from s3shuttle.share import ShareDB, curl_command, format_duration, get_share_db, parse_expiry

NOW = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)


class TestParseExpiry:
    @pytest.mark.parametrize('value, seconds', [
        ('7d', 604800), ('168h', 604800), ('1h30m', 5400), ('90s', 90), ('60', 60), ('2H', 7200),
    ])
    def test_valid(self, value, seconds) -> None:
        assert parse_expiry(value) == seconds

    @pytest.mark.parametrize('value', ['8d', '0', '0s', 'abc', '1x', 'h1', '10m junk'])
    def test_invalid(self, value) -> None:
        with pytest.raises(ConfigurationError):
            parse_expiry(value)


def test_format_duration() -> None:
    assert format_duration(datetime.timedelta(days=1, hours=2, minutes=3)) == '1d2h3m'
    assert format_duration(datetime.timedelta(hours=1, seconds=5)) == '1h0m5s'
    assert format_duration(datetime.timedelta(seconds=-5)) == '0m0s'


def test_curl_command() -> None:
    assert curl_command('https://h/b/', {'key': 'k', 'policy': 'p'}, 'f.txt') == (
        'curl -F key=k -F policy=p -F file=@f.txt https://h/b/')


class TestShareDB:
    def test_save_and_load(self, tmp_path) -> None:
        db = get_share_db(str(tmp_path / 'share'), 'download')
        db.add('https://h/b/k?X-Amz-Signature=1', 'https://h/b/k', 3600, now=NOW)
        db.save()

        loaded = get_share_db(str(tmp_path / 'share'), 'download')
        assert loaded.shares == db.shares
        assert (tmp_path / 'share' / 'downloads.json').exists()

    def test_active_prunes_expired(self, tmp_path) -> None:
        db = ShareDB(str(tmp_path / 'uploads.json'))
        db.add('old', 'https://h/b/old', 60, now=NOW)
        db.add('new', 'https://h/b/new', 7200, now=NOW)

        active = db.active(now=NOW + datetime.timedelta(hours=1))
        assert [(url, left) for url, _, left in active] == [('new', datetime.timedelta(hours=1))]
        assert list(db.shares) == ['new']

    def test_unknown_kind(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            get_share_db(str(tmp_path), 'sideways')
