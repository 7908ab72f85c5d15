"""
Canonical forms of an HTTP request for S3 request signing.

Everything here is a pure function of its arguments. The V4 helpers build
the pieces of the canonical request; legacy_canonical_resource() builds the
CanonicalizedResource element of a V2 string-to-sign.

Header values are used verbatim. Values spanning several lines are NOT
unfolded (RFC 2616 section 4.2), so a value with an embedded newline is
signed exactly as given.
"""

import re
from fnmatch import fnmatchcase
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, quote, quote_plus, unquote, urlsplit

HeaderValue = Union[str, Iterable[str]]
Headers = Mapping[str, HeaderValue]
Query = Union[str, Mapping[str, Union[str, List[str]]], Iterable[Tuple[str, str]]]

# Never part of a V4 signature. User-Agent and Content-Length are commonly
# rewritten by proxies and other agents that replay pre-signed URLs,
# browsers normalize Content-Type.
IGNORED_HEADERS = frozenset(['authorization', 'content-type', 'content-length', 'user-agent'])

# S3 sub-resources covered by a V2 signature. Must be sorted.
SUB_RESOURCES = tuple(sorted([
    'acl',
    'location',
    'logging',
    'notification',
    'partNumber',
    'policy',
    'requestPayment',
    'response-cache-control',
    'response-content-disposition',
    'response-content-encoding',
    'response-content-language',
    'response-content-type',
    'response-expires',
    'torrent',
    'uploadId',
    'uploads',
    'versionId',
    'versioning',
    'versions',
    'website',
]))

# Endpoint host -> region. Used to find the bucket part of a
# virtual-hosted-style host name.
REGION_ENDPOINTS = {
    's3-fips-us-gov-west-1.amazonaws.com': 'us-gov-west-1',
    's3.amazonaws.com': 'us-east-1',
    's3-external-1.amazonaws.com': 'us-east-1',
    's3-us-west-1.amazonaws.com': 'us-west-1',
    's3-us-west-2.amazonaws.com': 'us-west-2',
    's3-eu-west-1.amazonaws.com': 'eu-west-1',
    's3-eu-central-1.amazonaws.com': 'eu-central-1',
    's3-ap-southeast-1.amazonaws.com': 'ap-southeast-1',
    's3-ap-southeast-2.amazonaws.com': 'ap-southeast-2',
    's3-ap-northeast-1.amazonaws.com': 'ap-northeast-1',
    's3-sa-east-1.amazonaws.com': 'sa-east-1',
    's3.cn-north-1.amazonaws.com.cn': 'cn-north-1',
    'storage.googleapis.com': 'google',
}


def _group_headers(headers: Headers) -> Dict[str, List[str]]:
    """Lower-case header names, merging values of names that differ only by case"""
    grouped: Dict[str, List[str]] = {}
    for name, value in headers.items():
        values = [value] if isinstance(value, (str, bytes)) else list(value)
        for v in values:
            if isinstance(v, bytes):
                v = v.decode('utf-8')
            grouped.setdefault(name.lower(), []).append(str(v))
    return grouped


def _signable_names(grouped: Mapping[str, List[str]], ignored: Iterable[str]) -> List[str]:
    skip = {h.lower() for h in ignored}
    names = {name for name in grouped if name not in skip}
    names.add('host')
    return sorted(names)


def canonical_headers(headers: Headers, host: str,
                      ignored: Iterable[str] = IGNORED_HEADERS) -> str:
    """
    Return the CanonicalHeaders block of a V4 canonical request.

    Names are lower-cased and sorted, values of repeated names are joined
    with ','. The 'host' line always carries the request's host (with port,
    if any) and any Host entry in headers is disregarded. Every line,
    including the last, ends in a newline.
    """
    grouped = _group_headers(headers)
    grouped['host'] = [host]
    lines = []
    for name in _signable_names(grouped, ignored):
        lines.append(f"{name}:{','.join(grouped[name])}\n")
    return ''.join(lines)


def signed_header_names(headers: Headers, ignored: Iterable[str] = IGNORED_HEADERS) -> str:
    """Return the ';'-joined, sorted, lower-cased names that canonical_headers() signs"""
    return ';'.join(_signable_names(_group_headers(headers), ignored))


def _query_pairs(query: Query) -> List[Tuple[str, str]]:
    if isinstance(query, str):
        return parse_qsl(query, keep_blank_values=True)
    if isinstance(query, Mapping):
        pairs = []
        for k, v in query.items():
            if isinstance(v, (list, tuple)):
                pairs.extend((k, item) for item in v)
            else:
                pairs.append((k, v))
        return pairs
    return list(query)


def canonical_query(query: Query) -> str:
    """
    Return the CanonicalQueryString of a V4 canonical request.

    Accepts a raw query string, a mapping or a sequence of pairs. Keys are
    sorted (values of a repeated key keep their order), everything except
    unreserved characters is percent-encoded and spaces become %20.
    """
    pairs = sorted(_query_pairs(query), key=lambda kv: kv[0])
    return '&'.join(f"{quote(k, safe='~')}={quote(v, safe='~')}" for k, v in pairs)


def canonical_path(path: str) -> str:
    """
    Percent-encode a request path, leaving '/' and unreserved characters.

    The path is decoded first, so an already encoded path comes back
    unchanged: canonical_path(canonical_path(p)) == canonical_path(p).
    """
    if not path:
        return '/'
    return quote(unquote(path), safe='/~')


def split_host(netloc: str) -> str:
    """Drop any port from a host[:port] string"""
    if netloc.startswith('['):
        return netloc.split(']', 1)[0] + ']'
    return netloc.rsplit(':', 1)[0] if ':' in netloc else netloc


def is_virtual_host_style(host: str) -> bool:
    """True if the bucket name is part of the host, e.g. bucket.s3.amazonaws.com"""
    host = split_host(host).lower()
    return fnmatchcase(host, '*.s3*.amazonaws.com') or fnmatchcase(host, '*.storage.googleapis.com')


def bucket_from_host(host: str, region: Optional[str] = None) -> str:
    """
    Return the bucket prefix of a virtual-hosted-style host name, or '' if the
    host does not end in a known endpoint. Endpoints of the given region are
    tried first.
    """
    host = split_host(host).lower()
    endpoints = sorted(REGION_ENDPOINTS.items(), key=lambda kv: kv[1] != region)
    for endpoint, _ in endpoints:
        suffix = '.' + endpoint
        if host.endswith(suffix):
            return host[:-len(suffix)]
    m = re.match(r'^(.+)\.s3[.-][^.]+\.amazonaws\.com$', host)
    if m:
        return m.group(1)
    return ''


def legacy_canonical_resource(url: str, region: Optional[str] = None,
                              sub_resources: Iterable[str] = SUB_RESOURCES) -> str:
    """
    Return the CanonicalizedResource element of a V2 string-to-sign.

    That is [ '/' + bucket ] + encoded path + the sub-resources present in the
    query string, e.g. '/bucket/key?acl' or '/bucket/key?partNumber=2&uploadId=x'.
    Query parameters outside sub_resources are not part of the resource.
    """
    parts = urlsplit(url)
    path = parts.path or '/'
    if is_virtual_host_style(parts.netloc):
        bucket = bucket_from_host(parts.netloc, region)
        if bucket:
            path = '/' + bucket + path
    resource = canonical_path(path)

    if not parts.query:
        return resource
    values: Dict[str, List[str]] = {}
    for k, v in parse_qsl(parts.query, keep_blank_values=True):
        values.setdefault(k, []).append(v)

    rendered = []
    for name in sorted(sub_resources):
        if name not in values:
            continue
        first = values[name][0]
        rendered.append(f"{name}={quote_plus(first)}" if first else name)
    if rendered:
        resource += '?' + '&'.join(rendered)
    return resource


def guess_region_from_host(hostname: str) -> str:
    """If host is like <bucket>.s3.<region>.amazonaws.com, return that region, else 'us-east-1'"""
    hostname = split_host(hostname).lower()
    for endpoint, region in REGION_ENDPOINTS.items():
        if hostname == endpoint or hostname.endswith('.' + endpoint):
            return region

    m = re.search(r'(?:^|\.)s3\.([^.]+)\.amazonaws\.com$', hostname)
    if m:
        return m.group(1)

    # s3-<region>.amazonaws.com format
    m = re.search(r'(?:^|\.)s3-([^.]+)\.amazonaws\.com$', hostname)
    if m:
        return m.group(1)

    return 'us-east-1'
