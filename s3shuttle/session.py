"""
Resumable sessions.

A session is two files in the session directory, sharing the session ID:

  <id>.json  header: command, captured options, checkpoint, counters
  <id>.data  work items, one JSON object per line

The data file is written once, while the session is populated, and only
read afterwards. The header is rewritten on every checkpoint. A header is
first written when the session is sealed, so a session whose population
never finished is not resumable.
"""

import datetime
import json
import logging
import os
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from .config import GlobalOptions
from .errors import SessionNotFoundError, SessionStateError, SessionStorageError

logger = logging.getLogger(__name__)

SESSION_VERSION = '1'
SESSION_ID_LENGTH = 8
HEADER_SUFFIX = '.json'
DATA_SUFFIX = '.data'
PRINT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S %Z'
# Seconds after which a data file without header is considered abandoned
ORPHAN_DATA_AGE = 24 * 60 * 60


def new_session_id(length: int = SESSION_ID_LENGTH) -> str:
    return ''.join(secrets.choice(string.ascii_letters) for _ in range(length))


def get_session_file(root: str, session_id: str) -> str:
    return os.path.join(root, session_id + HEADER_SUFFIX)


def get_session_data_file(root: str, session_id: str) -> str:
    return os.path.join(root, session_id + DATA_SUFFIX)


def list_session_ids(root: str) -> List[str]:
    """IDs of all sessions with a header in root, oldest file first"""
    if not os.path.isdir(root):
        return []
    ids = []
    for name in os.listdir(root):
        if name.endswith(HEADER_SUFFIX):
            path = os.path.join(root, name)
            ids.append((os.path.getmtime(path), name[:-len(HEADER_SUFFIX)]))
    return [sid for _, sid in sorted(ids)]


def purge_session(root: str, session_id: str) -> None:
    """Remove both files of a session; already missing files are fine"""
    for path in (get_session_file(root, session_id),
                 get_session_file(root, session_id) + '.tmp',
                 get_session_data_file(root, session_id)):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SessionStorageError(f"Unable to remove session file '{path}': {e}") from e


def migrate_sessions(root: str, now: Optional[float] = None) -> List[str]:
    """
    Purge every session stored in a format this version cannot read, and
    data files left without a header by runs that died while populating.
    A headerless data file younger than ORPHAN_DATA_AGE may still be filling
    up in another process and is kept.
    """
    purged = []
    for sid in list_session_ids(root):
        try:
            Session.load(root, sid).release()
        except SessionNotFoundError:
            purged.append(sid)

    if not os.path.isdir(root):
        return purged
    now = time.time() if now is None else now
    for name in sorted(os.listdir(root)):
        if not name.endswith(DATA_SUFFIX):
            continue
        sid = name[:-len(DATA_SUFFIX)]
        if os.path.exists(get_session_file(root, sid)):
            continue
        try:
            age = now - os.path.getmtime(os.path.join(root, name))
        except FileNotFoundError:
            continue
        if age > ORPHAN_DATA_AGE:
            logger.debug(f"Removing data file of unsealed session {sid}")
            purge_session(root, sid)
            purged.append(sid)
    return purged


@dataclass
class SessionHeader:
    version: str = SESSION_VERSION
    when: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))
    working_folder: str = ''
    global_flags: Dict[str, Any] = field(default_factory=dict)
    command_type: str = ''
    command_args: List[str] = field(default_factory=list)
    command_flags: Dict[str, Any] = field(default_factory=dict)
    last_copied: str = ''
    total_bytes: int = 0
    total_objects: int = 0
    copied_bytes: int = 0
    copied_objects: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'time': self.when.isoformat(),
            'workingFolder': self.working_folder,
            'globalFlags': self.global_flags,
            'commandType': self.command_type,
            'cmdArgs': self.command_args,
            'cmdFlags': self.command_flags,
            'lastCopied': self.last_copied,
            'totalBytes': self.total_bytes,
            'totalObjects': self.total_objects,
            'copiedBytes': self.copied_bytes,
            'copiedObjects': self.copied_objects,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionHeader':
        """Missing keys take their defaults, unknown keys are ignored"""
        header = cls(version=str(data.get('version', '')))
        if data.get('time'):
            header.when = datetime.datetime.fromisoformat(data['time'])
        header.working_folder = str(data.get('workingFolder', ''))
        header.global_flags = dict(data.get('globalFlags') or {})
        header.command_type = str(data.get('commandType', ''))
        header.command_args = [str(a) for a in data.get('cmdArgs') or []]
        header.command_flags = dict(data.get('cmdFlags') or {})
        header.last_copied = str(data.get('lastCopied') or '')
        header.total_bytes = int(data.get('totalBytes', 0))
        header.total_objects = int(data.get('totalObjects', 0))
        header.copied_bytes = int(data.get('copiedBytes', 0))
        header.copied_objects = int(data.get('copiedObjects', 0))
        return header


class Session:
    """
    One resumable multi-item operation.

    Lifecycle: create() -> append() work items -> seal() -> checkpoint() as
    items complete -> close() (resumable later) or delete(). load() returns
    a sealed session. All header updates and file writes happen under the
    session lock.
    """

    def __init__(self, root: str, session_id: str, header: SessionHeader,
                 data_fp, sealed: bool):
        self.root = root
        self.session_id = session_id
        self.header = header
        self._data_fp = data_fp
        self._dirty = False
        self._sealed = sealed
        self._closed = False
        self._failed: Optional[BaseException] = None
        self._lock = threading.Lock()

    @property
    def header_path(self) -> str:
        return get_session_file(self.root, self.session_id)

    @property
    def data_path(self) -> str:
        return get_session_data_file(self.root, self.session_id)

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def options(self) -> GlobalOptions:
        return GlobalOptions.from_dict(self.header.global_flags)

    @property
    def has_data(self) -> bool:
        """True if some work item was already completed, i.e. this is a resume"""
        return bool(self.header.last_copied)

    @classmethod
    def create(cls, root: str, command: str, args: List[str], options: GlobalOptions,
               command_flags: Optional[Dict[str, Any]] = None) -> 'Session':
        header = SessionHeader(
            working_folder=os.getcwd(),
            global_flags=options.to_dict(),
            command_type=command,
            command_args=list(args),
            command_flags=dict(command_flags or {}),
        )
        session_id = new_session_id()
        data_path = get_session_data_file(root, session_id)
        try:
            os.makedirs(root, mode=0o700, exist_ok=True)
            data_fp = open(data_path, 'x+b')
        except OSError as e:
            raise SessionStorageError(f"Unable to create session data file '{data_path}': {e}") from e
        logger.debug(f"Created session {session_id} in {root}")
        return cls(root, session_id, header, data_fp, sealed=False)

    @classmethod
    def load(cls, root: str, session_id: str) -> 'Session':
        """
        Read a session back. Sessions written in another format version, or
        unreadable ones, are removed and reported as not found.
        """
        header_path = get_session_file(root, session_id)
        data_path = get_session_data_file(root, session_id)
        try:
            with open(header_path, 'r') as f:
                raw = json.load(f)
        except FileNotFoundError:
            raise SessionNotFoundError(session_id)
        except ValueError as e:
            logger.warning(f"Removing corrupt session file '{header_path}': {e}")
            purge_session(root, session_id)
            raise SessionNotFoundError(session_id, 'is corrupt and was removed')
        except OSError as e:
            raise SessionStorageError(f"Unable to read session file '{header_path}': {e}") from e

        version = str(raw.get('version', '')) if isinstance(raw, dict) else ''
        if version != SESSION_VERSION:
            logger.warning(f"Removing unsupported session file '{header_path}' version '{version}'.")
            purge_session(root, session_id)
            raise SessionNotFoundError(session_id, f"has unsupported version '{version}' and was removed")

        try:
            header = SessionHeader.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Removing corrupt session file '{header_path}': {e}")
            purge_session(root, session_id)
            raise SessionNotFoundError(session_id, 'is corrupt and was removed')

        try:
            data_fp = open(data_path, 'rb')
        except FileNotFoundError:
            logger.warning(f"Removing session '{session_id}' without data file.")
            purge_session(root, session_id)
            raise SessionNotFoundError(session_id, 'has no data file and was removed')
        except OSError as e:
            raise SessionStorageError(f"Unable to open session data file '{data_path}': {e}") from e
        return cls(root, session_id, header, data_fp, sealed=True)

    def _check_usable(self) -> None:
        if self._failed is not None:
            raise SessionStorageError(
                f"Session '{self.session_id}' failed to persist earlier: {self._failed}")
        if self._closed:
            raise SessionStateError(f"Session '{self.session_id}' is closed.")

    # Population

    def append(self, item: Dict[str, Any], size: int = 0) -> None:
        """Add one work item. Only allowed before seal()."""
        line = json.dumps(item, sort_keys=True) + '\n'
        with self._lock:
            self._check_usable()
            if self._sealed:
                raise SessionStateError(
                    f"Session '{self.session_id}' is sealed, work items cannot be added.")
            try:
                self._data_fp.write(line.encode('utf-8'))
            except OSError as e:
                self._failed = e
                raise SessionStorageError(f"Unable to write session data: {e}") from e
            self._dirty = True
            self.header.total_objects += 1
            self.header.total_bytes += size

    def seal(self) -> None:
        """End population, make the data file durable and write the header"""
        with self._lock:
            self._check_usable()
            self._sealed = True
            self._save_locked()

    def replay(self) -> Iterator[Dict[str, Any]]:
        """
        Yield the work items in the order they were appended. Every call reads
        through its own file handle, so replays may run side by side.
        """
        with self._lock:
            if self._dirty and not self._data_fp.closed:
                self._data_fp.flush()
        try:
            with open(self.data_path, 'rb') as f:
                for lineno, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line.decode('utf-8'))
                    except ValueError as e:
                        raise SessionStorageError(
                            f"Corrupt work item at {self.data_path}:{lineno}: {e}") from e
        except OSError as e:
            raise SessionStorageError(f"Unable to read session data file '{self.data_path}': {e}") from e

    # Progress

    def checkpoint(self, item_id: str, nbytes: int = 0, nobjects: int = 1) -> None:
        """
        Record item_id as the latest fully completed work item and flush the
        header. If the flush fails the checkpoint is not taken, the error is
        raised and the session refuses further checkpoints.
        """
        if not item_id:
            raise ValueError("Empty work item identifier.")
        with self._lock:
            self._check_usable()
            if not self._sealed:
                raise SessionStateError(
                    f"Session '{self.session_id}' is still being populated.")
            previous = (self.header.last_copied, self.header.copied_bytes, self.header.copied_objects)
            self.header.last_copied = item_id
            self.header.copied_bytes += nbytes
            self.header.copied_objects += nobjects
            try:
                self._save_locked()
            except SessionStorageError:
                (self.header.last_copied, self.header.copied_bytes,
                 self.header.copied_objects) = previous
                raise

    def save(self) -> None:
        with self._lock:
            self._check_usable()
            if not self._sealed:
                raise SessionStateError(
                    f"Session '{self.session_id}' is still being populated.")
            self._save_locked()

    def _save_locked(self) -> None:
        # Data first: a stale header only means redoing work, a header
        # pointing into lost data means skipping it.
        try:
            if self._dirty:
                self._data_fp.flush()
                os.fsync(self._data_fp.fileno())
                self._dirty = False
            self._write_header()
        except OSError as e:
            self._failed = e
            raise SessionStorageError(
                f"Unable to save session '{self.session_id}': {e}") from e

    def _write_header(self) -> None:
        path = self.header_path
        tmp = path + '.tmp'
        with open(tmp, 'w') as f:
            json.dump(self.header.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    # End of life

    def close(self) -> None:
        """Close the data file and write the header one last time"""
        with self._lock:
            if self._closed:
                return
            if not self._sealed:
                raise SessionStateError(
                    f"Session '{self.session_id}' was never sealed, delete it instead.")
            try:
                self._check_usable()
                self._save_locked()
            finally:
                self._data_fp.close()
                self._closed = True

    def release(self) -> None:
        """Drop the file handle without writing anything"""
        with self._lock:
            self._data_fp.close()
            self._closed = True

    def delete(self) -> None:
        """Remove both session files"""
        with self._lock:
            if not self._data_fp.closed:
                self._data_fp.close()
            self._closed = True
            purge_session(self.root, self.session_id)
        logger.debug(f"Deleted session {self.session_id}")

    # Presentation

    def __str__(self) -> str:
        when = self.header.when.astimezone().strftime(PRINT_DATE_FORMAT)
        args = ' '.join(self.header.command_args)
        return f"{self.session_id} -> [{when}] {self.header.command_type} {args}"

    def to_json(self) -> str:
        return json.dumps({
            'status': 'success',
            'sessionId': self.session_id,
            'time': self.header.when.astimezone().isoformat(),
            'commandType': self.header.command_type,
            'commandArgs': self.header.command_args,
        })
