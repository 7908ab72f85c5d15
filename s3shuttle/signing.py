"""
S3 request authentication, Signature Version 4 and legacy Version 2.

RequestAuthenticator holds credentials and never any per-request state, so
one instance can be shared by any number of threads. It works on
requests.PreparedRequest objects:

    auth = RequestAuthenticator(access_key, secret_key, region='us-east-1')
    auth.sign(prepared)                 # adds X-Amz-Date + Authorization
    url = auth.presign(prepared, 3600)  # returns a URL, prepared untouched

S3Auth plugs an authenticator into a requests.Session.
"""

import base64
import datetime
import hashlib
import hmac
import logging
from email.utils import formatdate
from typing import Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests
from requests.auth import AuthBase

from .canonical import (
    canonical_headers,
    canonical_path,
    canonical_query,
    legacy_canonical_resource,
    signed_header_names,
)
from .errors import AnonymousCredentialsError, ConfigurationError

logger = logging.getLogger(__name__)

SIGNATURE_V4 = 'S3v4'
SIGNATURE_V2 = 'S3v2'

ALGORITHM = 'AWS4-HMAC-SHA256'
ISO8601_FORMAT = '%Y%m%dT%H%M%SZ'
DATE_FORMAT = '%Y%m%d'
SERVICE_NAME = 's3'
SCOPE_TERMINATOR = 'aws4_request'
UNSIGNED_PAYLOAD = 'UNSIGNED-PAYLOAD'
EMPTY_SHA256 = hashlib.sha256(b'').hexdigest()
CONTENT_SHA256_HEADER = 'X-Amz-Content-Sha256'

_VERSION_ALIASES = {
    's3v4': SIGNATURE_V4,
    'v4': SIGNATURE_V4,
    's3v2': SIGNATURE_V2,
    'v2': SIGNATURE_V2,
}

Expiry = Union[int, datetime.timedelta]


def parse_signature_version(value: Optional[str]) -> str:
    """Normalize a configured signature version ('S3v4' when empty)"""
    if not value:
        return SIGNATURE_V4
    try:
        return _VERSION_ALIASES[value.strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported signature version '{value}', use {SIGNATURE_V4} or {SIGNATURE_V2}.")


def sha256_hexdigest(data: bytes) -> str:
    """Calculate SHA256 hex digest of data"""
    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: bytes, msg: str) -> bytes:
    """Calculate HMAC-SHA256"""
    return hmac.new(key, msg.encode('utf-8'), hashlib.sha256).digest()


def hmac_sha1_base64(key: str, msg: str) -> str:
    digest = hmac.new(key.encode('utf-8'), msg.encode('utf-8'), hashlib.sha1).digest()
    return base64.b64encode(digest).decode('ascii')


def get_signing_key(secret_key: str, date_stamp: str, region: str) -> bytes:
    """Derive the SigV4 signing key for one day (YYYYMMDD, UTC) and region"""
    k_date = hmac_sha256(('AWS4' + secret_key).encode('utf-8'), date_stamp)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, SERVICE_NAME)
    return hmac_sha256(k_service, SCOPE_TERMINATOR)


def get_scope(date_stamp: str, region: str) -> str:
    return f"{date_stamp}/{region}/{SERVICE_NAME}/{SCOPE_TERMINATOR}"


def get_string_to_sign_v4(canonical_request: str, when: datetime.datetime, region: str) -> str:
    return (
        f"{ALGORITHM}\n"
        f"{when.strftime(ISO8601_FORMAT)}\n"
        f"{get_scope(when.strftime(DATE_FORMAT), region)}\n"
        f"{sha256_hexdigest(canonical_request.encode('utf-8'))}"
    )


def build_canonical_request(method: str, url: str, headers, payload_hash: str) -> str:
    """
    canonical request =
      <HTTPMethod>\\n<CanonicalURI>\\n<CanonicalQueryString>\\n
      <CanonicalHeaders>\\n<SignedHeaders>\\n<HashedPayload>
    """
    parts = urlsplit(url)
    return '\n'.join([
        method.upper(),
        canonical_path(parts.path),
        canonical_query(parts.query),
        canonical_headers(headers, parts.netloc),
        signed_header_names(headers),
        payload_hash,
    ])


def _utcnow(now: Optional[datetime.datetime]) -> datetime.datetime:
    if now is None:
        return datetime.datetime.now(datetime.timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=datetime.timezone.utc)
    return now.astimezone(datetime.timezone.utc)


def _expiry_seconds(expires: Expiry) -> int:
    if isinstance(expires, datetime.timedelta):
        expires = int(expires.total_seconds())
    if expires <= 0:
        raise ValueError(f"Expiry must be positive, got {expires} seconds.")
    return int(expires)


class RequestAuthenticator:
    """
    Signs S3 requests with one set of credentials.

    An empty secret key means anonymous access: sign() leaves requests
    untouched and presign() refuses with AnonymousCredentialsError.
    """

    def __init__(self, access_key: str = '', secret_key: str = '',
                 region: str = 'us-east-1', version: Optional[str] = SIGNATURE_V4):
        self.access_key = access_key or ''
        self.secret_key = secret_key or ''
        self.region = region or 'us-east-1'
        self.version = parse_signature_version(version)

    def __repr__(self) -> str:
        return (f"RequestAuthenticator(access_key={self.access_key!r}, "
                f"region={self.region!r}, version={self.version!r})")

    @property
    def is_anonymous(self) -> bool:
        return not self.access_key or not self.secret_key

    def credential(self, when: datetime.datetime) -> str:
        """<access key>/<date>/<region>/s3/aws4_request"""
        return f"{self.access_key}/{get_scope(when.strftime(DATE_FORMAT), self.region)}"

    # Header signing

    def sign(self, request: requests.PreparedRequest,
             now: Optional[datetime.datetime] = None) -> requests.PreparedRequest:
        """
        Add authentication headers to request and return it. Only the header
        set is changed; URL and body are left as they are.
        """
        if self.is_anonymous:
            return request
        if self.version == SIGNATURE_V2:
            self._sign_v2(request, now)
        else:
            self._sign_v4(request, now)
        return request

    def _sign_v4(self, request: requests.PreparedRequest, now: Optional[datetime.datetime]) -> None:
        headers = request.headers
        amz_date = headers.get('X-Amz-Date')
        if amz_date:
            when = datetime.datetime.strptime(amz_date, ISO8601_FORMAT).replace(
                tzinfo=datetime.timezone.utc)
        else:
            when = _utcnow(now)
            headers['X-Amz-Date'] = when.strftime(ISO8601_FORMAT)
        if CONTENT_SHA256_HEADER not in headers:
            headers[CONTENT_SHA256_HEADER] = payload_hash(request.body)

        signable = {k: v for k, v in headers.items() if k.lower() != 'authorization'}
        canonical_request = build_canonical_request(
            request.method, request.url, signable, headers[CONTENT_SHA256_HEADER])
        logger.debug("CanonicalRequest:\n%s", canonical_request)
        string_to_sign = get_string_to_sign_v4(canonical_request, when, self.region)
        logger.debug("StringToSign:\n%s", string_to_sign)

        signing_key = get_signing_key(self.secret_key, when.strftime(DATE_FORMAT), self.region)
        signature = hmac.new(signing_key, string_to_sign.encode('utf-8'), hashlib.sha256).hexdigest()

        headers['Authorization'] = (
            f"{ALGORITHM} Credential={self.credential(when)}, "
            f"SignedHeaders={signed_header_names(signable)}, "
            f"Signature={signature}"
        )

    def _sign_v2(self, request: requests.PreparedRequest, now: Optional[datetime.datetime]) -> None:
        headers = request.headers
        if not headers.get('Date'):
            headers['Date'] = formatdate(_utcnow(now).timestamp(), usegmt=True)
        string_to_sign = self.string_to_sign_v2(request)
        logger.debug("StringToSign:\n%s", string_to_sign)
        signature = hmac_sha1_base64(self.secret_key, string_to_sign)
        headers['Authorization'] = f"AWS {self.access_key}:{signature}"

    def string_to_sign_v2(self, request: requests.PreparedRequest) -> str:
        """
        StringToSign = HTTP-Verb + "\\n" + Content-MD5 + "\\n" + Content-Type + "\\n" +
                       Date + "\\n" + CanonicalizedAmzHeaders + CanonicalizedResource
        """
        headers = request.headers
        amz = {}
        for name, value in headers.items():
            lower = name.lower()
            if lower.startswith('x-amz'):
                amz.setdefault(lower, []).append(value)
        amz_lines = ''.join(f"{name}:{','.join(amz[name])}\n" for name in sorted(amz))
        return (
            f"{request.method.upper()}\n"
            f"{headers.get('Content-MD5', '')}\n"
            f"{headers.get('Content-Type', '')}\n"
            f"{headers.get('Date', '')}\n"
            f"{amz_lines}"
            f"{legacy_canonical_resource(request.url, self.region)}"
        )

    # Pre-signing

    def presign(self, request: requests.PreparedRequest, expires: Expiry,
                now: Optional[datetime.datetime] = None) -> str:
        """
        Return request's URL with a signature valid for `expires` seconds
        embedded in the query string. request itself is not modified.
        """
        if self.is_anonymous:
            raise AnonymousCredentialsError()
        seconds = _expiry_seconds(expires)
        when = _utcnow(now)
        if self.version == SIGNATURE_V2:
            return self._presign_v2(request, seconds, when)
        return self._presign_v4(request, seconds, when)

    def _presign_v4(self, request: requests.PreparedRequest, seconds: int,
                    when: datetime.datetime) -> str:
        parts = urlsplit(request.url)
        signable = {k: v for k, v in request.headers.items() if k.lower() != 'authorization'}
        amz_params = {
            'X-Amz-Algorithm': ALGORITHM,
            'X-Amz-Date': when.strftime(ISO8601_FORMAT),
            'X-Amz-Expires': str(seconds),
            'X-Amz-SignedHeaders': signed_header_names(signable),
            'X-Amz-Credential': self.credential(when),
        }
        params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                  if k not in amz_params and k != 'X-Amz-Signature']
        query = canonical_query(params + list(amz_params.items()))
        path = canonical_path(parts.path)
        unsigned_url = urlunsplit((parts.scheme, parts.netloc, path, query, ''))

        canonical_request = build_canonical_request(
            request.method, unsigned_url, signable, UNSIGNED_PAYLOAD)
        logger.debug("CanonicalRequest:\n%s", canonical_request)
        string_to_sign = get_string_to_sign_v4(canonical_request, when, self.region)
        logger.debug("StringToSign:\n%s", string_to_sign)

        signing_key = get_signing_key(self.secret_key, when.strftime(DATE_FORMAT), self.region)
        signature = hmac.new(signing_key, string_to_sign.encode('utf-8'), hashlib.sha256).hexdigest()
        return f"{unsigned_url}&X-Amz-Signature={signature}"

    def _presign_v2(self, request: requests.PreparedRequest, seconds: int,
                    when: datetime.datetime) -> str:
        parts = urlsplit(request.url)
        epoch_expires = int(when.timestamp()) + seconds
        resource = legacy_canonical_resource(request.url, self.region)
        string_to_sign = f"{request.method.upper()}\n\n\n{epoch_expires}\n{resource}"
        logger.debug("StringToSign:\n%s", string_to_sign)
        signature = hmac_sha1_base64(self.secret_key, string_to_sign)

        id_param = 'GoogleAccessId' if self.region == 'google' else 'AWSAccessKeyId'
        fixed = {id_param: self.access_key, 'Expires': str(epoch_expires), 'Signature': signature}
        params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                  if k not in fixed]
        params.extend(fixed.items())
        params.sort(key=lambda kv: kv[0])
        return urlunsplit((parts.scheme, parts.netloc, canonical_path(parts.path),
                           urlencode(params), ''))

    # POST policy

    def post_policy_signature(self, policy_base64: str,
                              now: Optional[datetime.datetime] = None) -> str:
        """Sign a base64 POST policy document for a browser form upload"""
        if self.is_anonymous:
            raise AnonymousCredentialsError("POST policies cannot be signed with anonymous credentials")
        if self.version == SIGNATURE_V2:
            return hmac_sha1_base64(self.secret_key, policy_base64)
        when = _utcnow(now)
        signing_key = get_signing_key(self.secret_key, when.strftime(DATE_FORMAT), self.region)
        return hmac.new(signing_key, policy_base64.encode('utf-8'), hashlib.sha256).hexdigest()


def payload_hash(body) -> str:
    """SHA-256 of an in-memory body; UNSIGNED-PAYLOAD for streamed ones"""
    if body is None:
        return EMPTY_SHA256
    if isinstance(body, str):
        body = body.encode('utf-8')
    if isinstance(body, (bytes, bytearray)):
        return sha256_hexdigest(bytes(body))
    return UNSIGNED_PAYLOAD


class S3Auth(AuthBase):
    """requests authentication hook signing each prepared request"""

    def __init__(self, authenticator: RequestAuthenticator):
        self.authenticator = authenticator

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        return self.authenticator.sign(r)
