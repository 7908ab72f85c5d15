"""
Resumable copies.

prepare_copy() enumerates the sources once into the session's work items.
run_copy() replays them, skips what a previous run already finished and
copies the rest with a pool of worker threads. Workers finish in any order,
but the checkpoint only ever moves over a gap-free prefix of the replay
order, so everything up to the checkpoint is really done.
"""

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from .client import Client, FSClient, S3Client, guess_content_type, new_client
from .config import Config
from .errors import S3RequestError, SessionStorageError, TransferError
from .resume import ResumeFilter
from .session import Session

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


def format_bytes(size: float) -> str:
    """Format bytes to human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} PB"


class ClientPool:
    """Creates clients, sharing one HTTP session per endpoint across threads"""

    def __init__(self, config: Config):
        self.config = config
        self._sessions: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> Client:
        with self._lock:
            return new_client(url, self.config, self._sessions)

    def close(self) -> None:
        with self._lock:
            for s in self._sessions.values():
                s.close()
            self._sessions.clear()


def _is_folder_target(client: Client, target: str) -> bool:
    if target.endswith('/') or target.endswith(os.sep):
        return True
    if isinstance(client, FSClient):
        return os.path.isdir(client.path)
    return isinstance(client, S3Client) and not client.key


def prepare_copy(session: Session, sources: List[str], target: str, recursive: bool,
                 pool: ClientPool) -> None:
    """Append one work item per object to copy, then seal the session"""
    target_client = pool.get(target)
    into_folder = len(sources) > 1 or _is_folder_target(target_client, target)

    for source in sources:
        source_client = pool.get(source)
        content = source_client.stat()
        if not content.is_dir:
            dest = target_client.join(os.path.basename(source.rstrip('/'))) if into_folder else target
            session.append({'source': source_client.url, 'target': dest, 'size': content.size},
                           size=content.size)
            continue

        if not recursive:
            raise TransferError(f"'{source}' is a folder, use --recursive to copy it.")
        if not isinstance(source_client, FSClient):
            raise TransferError(f"Copying whole buckets or prefixes is not supported: '{source}'.")
        if isinstance(target_client, FSClient) and os.path.isfile(target_client.path):
            raise TransferError(f"Target '{target}' must be a folder.")
        # 'dir/' copies the contents of dir, 'dir' copies dir itself
        prefix = '' if source.endswith(('/', os.sep)) else os.path.basename(source_client.path) + '/'
        for entry in source_client.list(recursive=True):
            rel = os.path.relpath(entry.url, source_client.path).replace(os.sep, '/')
            session.append({'source': entry.url, 'target': target_client.join(prefix + rel),
                            'size': entry.size}, size=entry.size)

    session.seal()
    logger.info(f"Session {session.session_id}: {session.header.total_objects} object(s), "
                f"{format_bytes(session.header.total_bytes)} to copy.")


def copy_item(item: Dict[str, Any], pool: ClientPool) -> int:
    """Copy one work item, return the number of bytes copied"""
    source = pool.get(item['source'])
    target = pool.get(item['target'])
    reader = source.get()
    try:
        target.put(reader, item.get('size', -1), guess_content_type(item['target']))
    finally:
        reader.close()
    logger.debug(f"Copied {item['source']} -> {item['target']}")
    return item.get('size', 0)


class CheckpointTracker:
    """
    Turns out-of-order completions into in-order checkpoints.

    Items are numbered in replay order as they are started. complete(n)
    checkpoints the newest item of the completed prefix, if it grew.
    """

    def __init__(self, session: Session):
        self.session = session
        self._items: Dict[int, Dict[str, Any]] = {}
        self._done = set()
        self._next = 0

    def started(self, seq: int, item: Dict[str, Any]) -> None:
        self._items[seq] = item

    def complete(self, seq: int) -> Optional[Dict[str, Any]]:
        self._done.add(seq)
        last = None
        nbytes = nobjects = 0
        while self._next in self._done:
            self._done.discard(self._next)
            last = self._items.pop(self._next)
            nbytes += last.get('size', 0)
            nobjects += 1
            self._next += 1
        if last is not None:
            self.session.checkpoint(last['source'], nbytes, nobjects)
        return last

    def item(self, seq: int) -> Dict[str, Any]:
        return self._items[seq]


def run_copy(session: Session, pool: ClientPool, workers: int = DEFAULT_WORKERS,
             progress: bool = True) -> int:
    """
    Copy every work item not finished yet. Returns the number of items
    copied by this run. Raises TransferError after the in-flight items have
    settled if any item failed; SessionStorageError aborts right away.
    """
    resume = ResumeFilter(session.header.last_copied)
    if session.has_data:
        logger.info(f"Resuming session {session.session_id} after '{session.header.last_copied}'.")
    tracker = CheckpointTracker(session)
    bar = tqdm(total=session.header.total_bytes, initial=session.header.copied_bytes,
               unit='B', unit_scale=True, desc='Copying', disable=not progress)
    pending: Dict[Future, int] = {}
    failures: List[str] = []
    copied = 0

    def settle(done) -> None:
        nonlocal copied
        for fut in done:
            seq = pending.pop(fut)
            try:
                nbytes = fut.result()
            except (S3RequestError, OSError) as e:
                item = tracker.item(seq)
                logger.error(f"Failed to copy {item['source']}: {e}")
                failures.append(item['source'])
                continue
            tracker.complete(seq)
            bar.update(nbytes)
            copied += 1

    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        seq = 0
        for item in session.replay():
            if resume.should_skip(item['source']):
                continue
            if failures:
                break
            tracker.started(seq, item)
            pending[executor.submit(copy_item, item, pool)] = seq
            seq += 1
            if len(pending) >= workers * 2:
                settle(wait(pending, return_when=FIRST_COMPLETED).done)
        while pending:
            settle(wait(pending, return_when=FIRST_COMPLETED).done)
    except BaseException:
        # SessionStorageError, KeyboardInterrupt: drop what has not started
        for fut in pending:
            fut.cancel()
        raise
    finally:
        executor.shutdown(wait=True)
        bar.close()

    if failures:
        raise TransferError(f"{len(failures)} object(s) failed to copy.", session.session_id)
    return copied


def do_copy_session(session: Session, pool: ClientPool, workers: int = DEFAULT_WORKERS,
                    progress: bool = True) -> int:
    """
    Run a sealed session to completion. A finished session is deleted; a
    failed or interrupted one is closed so that it can be resumed. A session
    whose files can no longer be written is only released.
    """
    try:
        copied = run_copy(session, pool, workers, progress)
    except SessionStorageError:
        session.release()
        raise
    except BaseException:
        session.close()
        raise
    session.delete()
    return copied
