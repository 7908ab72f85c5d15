"""Tests for s3shuttle.session"""

import json
import os
import threading
from unittest import mock

import pytest

from s3shuttle.config import GlobalOptions
from s3shuttle.errors import SessionNotFoundError, SessionStateError, SessionStorageError
from s3shuttle.resume import ResumeFilter
from s3shuttle.session import (
    SESSION_VERSION,
    Session,
    get_session_data_file,
    get_session_file,
    list_session_ids,
    migrate_sessions,
)

ITEMS = [{'source': f"item{c}", 'target': f"/dst/item{c}", 'size': 10} for c in 'ABCD']


def populated(root, options, items=ITEMS) -> Session:
    session = Session.create(root, 'cp', ['src/', 'dst/'], options, {'recursive': True})
    for item in items:
        session.append(item, size=item['size'])
    session.seal()
    return session


def read_header(session_root, session_id):
    with open(get_session_file(session_root, session_id)) as f:
        return json.load(f)


class TestLifecycle:
    def test_round_trip(self, session_root, options) -> None:
        session = populated(session_root, options, ITEMS[:3])
        sid = session.session_id
        session.close()

        loaded = Session.load(session_root, sid)
        assert list(loaded.replay()) == ITEMS[:3]
        assert loaded.header.command_type == 'cp'
        assert loaded.header.command_args == ['src/', 'dst/']
        assert loaded.header.command_flags == {'recursive': True}
        assert loaded.header.total_objects == 3
        assert loaded.header.total_bytes == 30
        assert loaded.options == options
        assert loaded.sealed
        loaded.release()

    def test_session_id(self, session_root, options) -> None:
        session = populated(session_root, options)
        assert len(session.session_id) == 8
        assert session.session_id.isalpha()
        assert list_session_ids(session_root) == [session.session_id]
        session.delete()

    def test_no_header_before_seal(self, session_root, options) -> None:
        session = Session.create(session_root, 'cp', [], options)
        session.append(ITEMS[0])
        assert not os.path.exists(session.header_path)
        assert list_session_ids(session_root) == []
        session.seal()
        assert read_header(session_root, session.session_id)['version'] == SESSION_VERSION
        session.delete()

    def test_append_after_seal(self, session_root, options) -> None:
        session = populated(session_root, options)
        with pytest.raises(SessionStateError):
            session.append(ITEMS[0])
        session.delete()

    def test_checkpoint_before_seal(self, session_root, options) -> None:
        session = Session.create(session_root, 'cp', [], options)
        session.append(ITEMS[0])
        with pytest.raises(SessionStateError):
            session.checkpoint('itemA')
        session.delete()

    def test_close_unsealed(self, session_root, options) -> None:
        session = Session.create(session_root, 'cp', [], options)
        with pytest.raises(SessionStateError):
            session.close()
        session.delete()

    def test_delete_removes_both_files(self, session_root, options) -> None:
        session = populated(session_root, options)
        sid = session.session_id
        session.delete()
        assert not os.path.exists(get_session_file(session_root, sid))
        assert not os.path.exists(get_session_data_file(session_root, sid))
        with pytest.raises(SessionNotFoundError):
            Session.load(session_root, sid)

    def test_replay_is_restartable(self, session_root, options) -> None:
        session = populated(session_root, options)
        first, second = session.replay(), session.replay()
        assert next(first) == ITEMS[0]
        assert next(second) == ITEMS[0]
        assert next(first) == ITEMS[1]
        assert list(session.replay()) == ITEMS
        session.delete()

    def test_str_and_json(self, session_root, options) -> None:
        session = populated(session_root, options)
        assert str(session).startswith(f"{session.session_id} -> [")
        assert str(session).endswith('] cp src/ dst/')
        assert json.loads(session.to_json())['sessionId'] == session.session_id
        session.delete()


class TestCheckpoint:
    def test_durable_and_resumable(self, session_root, options) -> None:
        session = populated(session_root, options)
        session.checkpoint('itemA', 10)
        session.checkpoint('itemB', 10)
        sid = session.session_id
        # checkpoint alone must be enough, no close()
        session.release()

        loaded = Session.load(session_root, sid)
        assert loaded.header.last_copied == 'itemB'
        assert loaded.header.copied_bytes == 20
        assert loaded.header.copied_objects == 2
        assert loaded.has_data

        resume = ResumeFilter(loaded.header.last_copied)
        assert [resume.should_skip(item['source']) for item in loaded.replay()] == [
            True, True, False, False]
        loaded.delete()

    def test_empty_item_id(self, session_root, options) -> None:
        session = populated(session_root, options)
        with pytest.raises(ValueError):
            session.checkpoint('')
        session.delete()

    def test_concurrent_checkpoints(self, session_root, options) -> None:
        session = populated(session_root, options)

        def worker(n):
            for i in range(25):
                session.checkpoint(f"w{n}-{i}", 1)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert session.header.copied_objects == 100
        on_disk = read_header(session_root, session.session_id)
        assert on_disk['copiedObjects'] == 100
        assert on_disk['copiedBytes'] == 100
        assert on_disk['lastCopied'] == session.header.last_copied
        session.delete()

    def test_failed_flush_refuses_further_checkpoints(self, session_root, options) -> None:
        session = populated(session_root, options)
        session.checkpoint('itemA', 10)

        with mock.patch('s3shuttle.session.os.replace', side_effect=OSError('disk full')):
            with pytest.raises(SessionStorageError):
                session.checkpoint('itemB', 10)

        assert session.header.last_copied == 'itemA'
        assert session.header.copied_bytes == 10
        assert read_header(session_root, session.session_id)['lastCopied'] == 'itemA'
        with pytest.raises(SessionStorageError):
            session.checkpoint('itemB', 10)
        with pytest.raises(SessionStorageError):
            session.close()
        assert session._data_fp.closed
        session.close()
        session.delete()
        assert not os.path.exists(get_session_data_file(session_root, session.session_id))

    def test_data_is_synced_before_header(self, session_root, options) -> None:
        session = Session.create(session_root, 'cp', [], options)
        session.append(ITEMS[0])
        calls = []
        with mock.patch('s3shuttle.session.os.fsync', side_effect=lambda fd: calls.append('fsync')), \
                mock.patch.object(Session, '_write_header', side_effect=lambda: calls.append('header')):
            session.seal()
        assert calls == ['fsync', 'header']
        session.delete()

    def test_no_tmp_file_left(self, session_root, options) -> None:
        session = populated(session_root, options)
        session.checkpoint('itemA')
        assert sorted(os.listdir(session_root)) == sorted([
            session.session_id + '.json', session.session_id + '.data'])
        session.delete()


class TestLoad:
    def test_missing(self, session_root) -> None:
        with pytest.raises(SessionNotFoundError) as exc:
            Session.load(session_root, 'abcdefgh')
        assert str(exc.value) == "Session 'abcdefgh' not found."

    def test_version_mismatch_purges(self, session_root, options) -> None:
        session = populated(session_root, options)
        sid = session.session_id
        session.close()
        header = read_header(session_root, sid)
        header['version'] = '0'
        with open(get_session_file(session_root, sid), 'w') as f:
            json.dump(header, f)

        with pytest.raises(SessionNotFoundError):
            Session.load(session_root, sid)
        assert os.listdir(session_root) == []

    def test_corrupt_header_purges(self, session_root, options) -> None:
        session = populated(session_root, options)
        sid = session.session_id
        session.close()
        with open(get_session_file(session_root, sid), 'w') as f:
            f.write('{"version": "1", "cmdArgs": [')

        with pytest.raises(SessionNotFoundError):
            Session.load(session_root, sid)
        assert os.listdir(session_root) == []

    def test_missing_data_file_purges(self, session_root, options) -> None:
        session = populated(session_root, options)
        sid = session.session_id
        session.close()
        os.remove(get_session_data_file(session_root, sid))
        with pytest.raises(SessionNotFoundError):
            Session.load(session_root, sid)
        assert os.listdir(session_root) == []

    def test_missing_and_unknown_fields(self, session_root, options) -> None:
        session = populated(session_root, options)
        sid = session.session_id
        session.close()
        with open(get_session_file(session_root, sid), 'w') as f:
            json.dump({'version': SESSION_VERSION, 'commandType': 'cp', 'futureField': [1, 2]}, f)

        loaded = Session.load(session_root, sid)
        assert loaded.header.command_type == 'cp'
        assert loaded.header.last_copied == ''
        assert loaded.header.copied_objects == 0
        assert loaded.options == GlobalOptions()
        assert list(loaded.replay()) == ITEMS
        loaded.release()


class TestMigrate:
    def test_purges_unreadable_sessions(self, session_root, options) -> None:
        good = populated(session_root, options)
        good.close()
        old = populated(session_root, options)
        old.close()
        with open(get_session_file(session_root, old.session_id), 'w') as f:
            json.dump({'version': '0'}, f)

        assert migrate_sessions(session_root) == [old.session_id]
        assert list_session_ids(session_root) == [good.session_id]

    def test_missing_root(self, tmp_path) -> None:
        assert migrate_sessions(str(tmp_path / 'nothing')) == []

    def test_purges_abandoned_data_files(self, session_root, options) -> None:
        kept = populated(session_root, options)
        kept.close()
        abandoned = Session.create(session_root, 'cp', [], options)
        abandoned.append(ITEMS[0])
        abandoned.release()
        filling = Session.create(session_root, 'cp', [], options)
        filling.append(ITEMS[0])

        now = os.path.getmtime(get_session_data_file(session_root, filling.session_id))
        day_ago = now - 25 * 60 * 60
        os.utime(get_session_data_file(session_root, abandoned.session_id), (day_ago, day_ago))
        kept_data = get_session_data_file(session_root, kept.session_id)
        os.utime(kept_data, (day_ago, day_ago))

        assert migrate_sessions(session_root, now=now) == [abandoned.session_id]
        assert not os.path.exists(get_session_data_file(session_root, abandoned.session_id))
        assert os.path.exists(get_session_data_file(session_root, filling.session_id))
        assert os.path.exists(kept_data)
        assert list_session_ids(session_root) == [kept.session_id]
        filling.delete()
