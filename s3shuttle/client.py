"""
Storage clients. Both implementations offer the same operations, so the
copy engine does not care whether a URL is a local path or an S3 object.
new_client() picks one from the URL and the configured aliases.
"""

import abc
import datetime
import hashlib
import logging
import mimetypes
import os
import shutil
import tempfile
from email.utils import parsedate_to_datetime
from typing import BinaryIO, Dict, Iterator, Optional
from urllib.parse import quote, unquote, urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .canonical import bucket_from_host, canonical_path, guess_region_from_host, is_virtual_host_style
from .config import Config
from .errors import S3RequestError
from .policy import PostPolicy
from .signing import CONTENT_SHA256_HEADER, RequestAuthenticator, S3Auth

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 8192  # 8KB chunks for streaming
DEFAULT_TIMEOUT = 30


class Content:
    """Metadata of one object or file"""

    def __init__(self, url: str, size: int = 0, time: Optional[datetime.datetime] = None,
                 is_dir: bool = False, content_type: str = ''):
        self.url = url
        self.size = size
        self.time = time
        self.is_dir = is_dir
        self.content_type = content_type

    def __repr__(self) -> str:
        return f"Content(url={self.url!r}, size={self.size}, is_dir={self.is_dir})"


class Client(abc.ABC):
    def __init__(self, url: str):
        self.url = url

    @abc.abstractmethod
    def stat(self) -> Content:
        ...

    @abc.abstractmethod
    def list(self, recursive: bool = False) -> Iterator[Content]:
        ...

    @abc.abstractmethod
    def get(self) -> BinaryIO:
        ...

    @abc.abstractmethod
    def put(self, reader: BinaryIO, size: int, content_type: str = '') -> None:
        ...

    @abc.abstractmethod
    def remove(self) -> None:
        ...

    def join(self, name: str) -> str:
        """URL of name below this one"""
        return self.url.rstrip('/') + '/' + name.lstrip('/')

    def share_download(self, expires: int) -> str:
        raise S3RequestError(f"Sharing is not supported for '{self.url}'.")

    def share_upload(self, expires: int, content_type: str = '') -> Dict[str, str]:
        raise S3RequestError(f"Sharing is not supported for '{self.url}'.")

    def make_bucket(self, region: str = '') -> None:
        raise S3RequestError(f"'{self.url}' is not an object storage URL.")


class FSClient(Client):
    """Local filesystem"""

    def __init__(self, path: str):
        super().__init__(path)
        self.path = os.path.abspath(os.path.expanduser(path))

    def stat(self) -> Content:
        try:
            st = os.stat(self.path)
        except OSError as e:
            raise S3RequestError(f"Unable to stat '{self.path}': {e}") from e
        return Content(self.url, size=st.st_size,
                       time=datetime.datetime.fromtimestamp(st.st_mtime, datetime.timezone.utc),
                       is_dir=os.path.isdir(self.path))

    def list(self, recursive: bool = False) -> Iterator[Content]:
        if not os.path.isdir(self.path):
            yield self.stat()
            return
        if not recursive:
            for name in sorted(os.listdir(self.path)):
                yield FSClient(os.path.join(self.path, name)).stat()
            return
        for dirpath, dirnames, filenames in os.walk(self.path):
            dirnames.sort()
            for name in sorted(filenames):
                yield FSClient(os.path.join(dirpath, name)).stat()

    def get(self) -> BinaryIO:
        try:
            return open(self.path, 'rb')
        except OSError as e:
            raise S3RequestError(f"Unable to open '{self.path}': {e}") from e

    def put(self, reader: BinaryIO, size: int, content_type: str = '') -> None:
        parent = os.path.dirname(self.path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.path, 'wb') as f:
                shutil.copyfileobj(reader, f, STREAM_CHUNK_SIZE)
        except OSError as e:
            raise S3RequestError(f"Unable to write '{self.path}': {e}") from e

    def remove(self) -> None:
        try:
            os.remove(self.path)
        except OSError as e:
            raise S3RequestError(f"Unable to remove '{self.path}': {e}") from e

    def join(self, name: str) -> str:
        return os.path.join(self.path, *name.split('/'))

    def make_bucket(self, region: str = '') -> None:
        os.makedirs(self.path, exist_ok=True)


# Headers that belong to one signature and must not survive a redirect
SIGNATURE_HEADERS = ('Authorization', 'X-Amz-Date', 'Date')


class S3Session(requests.Session):
    """requests session that signs redirected requests again for their new URL"""

    def rebuild_auth(self, prepared_request: requests.PreparedRequest,
                     response: requests.Response) -> None:
        for name in SIGNATURE_HEADERS:
            prepared_request.headers.pop(name, None)
        if self.auth is not None:
            self.auth(prepared_request)


def create_session(authenticator: RequestAuthenticator, max_retries: int = 3) -> S3Session:
    """Create a requests session with retry logic, connection pooling and S3 signing"""
    session = S3Session()
    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET", "PUT", "POST", "DELETE"]
    )
    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=10,
        pool_maxsize=20
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.auth = S3Auth(authenticator)
    return session


def create_bucket_configuration_xml(region: str) -> str:
    """Return <CreateBucketConfiguration> if region is non-empty, else empty string"""
    if region and region != 'us-east-1':
        return (
            f"<CreateBucketConfiguration>"
            f"<LocationConstraint>{region}</LocationConstraint>"
            f"</CreateBucketConfiguration>"
        )
    return ''


def sha256_streaming(reader: BinaryIO) -> str:
    """SHA-256 of a seekable stream, which is rewound afterwards"""
    start = reader.tell()
    sha = hashlib.sha256()
    for chunk in iter(lambda: reader.read(STREAM_CHUNK_SIZE), b''):
        sha.update(chunk)
    reader.seek(start)
    return sha.hexdigest()


def _is_seekable(reader) -> bool:
    try:
        return reader.seekable()
    except (AttributeError, ValueError):
        return False


class S3Client(Client):
    """One bucket or object on an S3 compatible service"""

    def __init__(self, url: str, authenticator: RequestAuthenticator,
                 session: Optional[requests.Session] = None, timeout: int = DEFAULT_TIMEOUT):
        super().__init__(url)
        parts = urlsplit(url)
        if parts.scheme not in ('http', 'https') or not parts.hostname:
            raise S3RequestError(f"Invalid URL: {url}")
        self.authenticator = authenticator
        self.session = session or create_session(authenticator)
        self.timeout = timeout
        self.virtual_host = is_virtual_host_style(parts.netloc)
        path = unquote(parts.path.lstrip('/'))
        if self.virtual_host:
            self.bucket = bucket_from_host(parts.netloc, authenticator.region)
            self.key = path
        else:
            self.bucket, _, self.key = path.partition('/')
        self._parts = parts

    @property
    def object_url(self) -> str:
        """URL on the wire, path encoded the way it is signed"""
        p = self._parts
        return urlunsplit((p.scheme, p.netloc, canonical_path(p.path), p.query, ''))

    def _request(self, method: str, url: Optional[str] = None, expected=(200,),
                 **kwargs) -> requests.Response:
        url = url or self.object_url
        logger.debug(f"{method} {url}")
        resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if resp.status_code not in expected:
            body = '' if method == 'HEAD' else resp.text[:1024]
            resp.close()
            raise S3RequestError(f"{method} {url} failed: {resp.status_code} {resp.reason}",
                                 status_code=resp.status_code, body=body)
        return resp

    def stat(self) -> Content:
        if not self.key or self.key.endswith('/'):
            self._request('HEAD', self.bucket_url)
            return Content(self.url, is_dir=True)
        resp = self._request('HEAD')
        modified = resp.headers.get('Last-Modified')
        when = None
        if modified:
            when = parsedate_to_datetime(modified)
        return Content(self.url, size=int(resp.headers.get('Content-Length', 0)), time=when,
                       content_type=resp.headers.get('Content-Type', ''))

    @property
    def bucket_url(self) -> str:
        p = self._parts
        path = '/' if self.virtual_host else f"/{self.bucket}/"
        return urlunsplit((p.scheme, p.netloc, path, '', ''))

    def join(self, name: str) -> str:
        # '?' and '#' are legal in file names but not in a URL path
        return super().join(quote(name, safe='/'))

    def list(self, recursive: bool = False) -> Iterator[Content]:
        # Bucket listing is left to other tools; an object lists as itself.
        yield self.stat()

    def get(self) -> BinaryIO:
        # stored bytes as they are, even for objects saved with a Content-Encoding
        resp = self._request('GET', stream=True, headers={'Accept-Encoding': 'identity'})
        return resp.raw

    def put(self, reader: BinaryIO, size: int, content_type: str = '') -> None:
        headers = {'Content-Type': content_type or guess_content_type(self.key)}
        if _is_seekable(reader):
            headers[CONTENT_SHA256_HEADER] = sha256_streaming(reader)
            self._request('PUT', data=reader, headers=headers).close()
            return
        # requests only sends a Content-Length for bodies it can measure
        with tempfile.TemporaryFile() as spool:
            shutil.copyfileobj(reader, spool, STREAM_CHUNK_SIZE)
            spool.seek(0)
            headers[CONTENT_SHA256_HEADER] = sha256_streaming(spool)
            self._request('PUT', data=spool, headers=headers).close()

    def remove(self) -> None:
        self._request('DELETE', expected=(200, 204)).close()

    def make_bucket(self, region: str = '') -> None:
        region = region or self.authenticator.region
        body = create_bucket_configuration_xml(region).encode('utf-8')
        self._request('PUT', self.bucket_url, data=body).close()

    def share_download(self, expires: int) -> str:
        request = requests.Request('GET', self.object_url).prepare()
        return self.authenticator.presign(request, expires)

    def share_upload(self, expires: int, content_type: str = '') -> Dict[str, str]:
        expiration = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=expires)
        policy = PostPolicy(self.bucket, self.key, expiration, content_type or None)
        return policy.sign(self.authenticator)


def guess_content_type(name: str) -> str:
    """Content type from the file extension, application/octet-stream when unknown"""
    content_type, _ = mimetypes.guess_type(name)
    return content_type or 'application/octet-stream'


def new_client(url: str, config: Config, session_cache: Optional[Dict] = None) -> Client:
    """
    Client for url: an alias ('alias/bucket/key') or http(s) URL gives an
    S3Client, anything else is a local path. session_cache, if given, shares
    one requests session per endpoint between clients.
    """
    host, full_url = config.expand_alias(url)
    if urlsplit(full_url).scheme not in ('http', 'https'):
        return FSClient(url)

    if host is not None:
        authenticator = host.authenticator()
    else:
        hostname = urlsplit(full_url).hostname or ''
        authenticator = RequestAuthenticator(region=guess_region_from_host(hostname))

    session = None
    if session_cache is not None:
        key = urlsplit(full_url).netloc
        session = session_cache.get(key)
        if session is None:
            session = session_cache[key] = create_session(authenticator)
    return S3Client(full_url, authenticator, session=session)
