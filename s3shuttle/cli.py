"""Command line interface."""

import argparse
import base64
import datetime
import hashlib
import io
import json
import logging
import os
import re
import sys
import time
from functools import wraps
from typing import BinaryIO, Dict, List, Optional
from urllib.parse import urlsplit

import requests

from . import __version__
from .canonical import guess_region_from_host
from .client import S3Client, create_session, new_client
from .config import Config, GlobalOptions
from .errors import ConfigurationError, S3RequestError, S3ShuttleError, SessionNotFoundError, TransferError
from .session import Session, list_session_ids, migrate_sessions
from .share import DEFAULT_EXPIRY, curl_command, format_duration, get_share_db, parse_expiry
from .signing import RequestAuthenticator
from .transfer import DEFAULT_WORKERS, ClientPool, do_copy_session, format_bytes, prepare_copy

STREAM_CHUNK_SIZE = 8192


def timing_decorator(func):
    """Decorator to measure function execution time"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        result = func(*args, **kwargs)
        end_time = time.time()
        logging.debug(f"{func.__name__} took {end_time - start_time:.3f} seconds")
        return result
    return wrapper


def print_message(options: GlobalOptions, text: str, **fields) -> None:
    if options.json:
        print(json.dumps(dict(status='success', **fields)))
    elif not options.quiet:
        print(text)


# cp and session

def run_session(session: Session, pool: ClientPool, options: GlobalOptions, workers: int) -> int:
    try:
        copied = do_copy_session(session, pool, workers, progress=not (options.quiet or options.json))
    except KeyboardInterrupt:
        logging.error(f"Session safely terminated. To resume session 's3shuttle session resume {session.session_id}'")
        return 1
    except TransferError as e:
        logging.error(f"{e} To resume session 's3shuttle session resume {e.session_id}'")
        return 1
    finally:
        pool.close()
    print_message(options, f"Copied {copied} object(s).", copied=copied)
    return 0


def cmd_cp(args, config: Config, options: GlobalOptions) -> int:
    pool = ClientPool(config)
    session = Session.create(config.session_dir, 'cp', args.sources + [args.target], options,
                             {'recursive': args.recursive, 'workers': args.workers})
    try:
        prepare_copy(session, args.sources, args.target, args.recursive, pool)
    except BaseException:
        session.delete()
        pool.close()
        raise
    return run_session(session, pool, options, args.workers)


def cmd_session_list(args, config: Config, options: GlobalOptions) -> int:
    for sid in list_session_ids(config.session_dir):
        try:
            session = Session.load(config.session_dir, sid)
        except SessionNotFoundError:
            continue
        session.release()
        print(session.to_json() if options.json else str(session))
    return 0


def cmd_session_resume(args, config: Config, options: GlobalOptions) -> int:
    session = Session.load(config.session_dir, args.session_id)
    if session.header.command_type != 'cp':
        session.release()
        raise ConfigurationError(f"Cannot resume command '{session.header.command_type}'.")
    # Behave like the run that created the session
    restored = session.options
    restored.apply(args.log_file)
    workers = int(session.header.command_flags.get('workers', DEFAULT_WORKERS))
    if session.header.working_folder and os.path.isdir(session.header.working_folder):
        os.chdir(session.header.working_folder)
    return run_session(session, ClientPool(config), restored, workers)


def cmd_session_clear(args, config: Config, options: GlobalOptions) -> int:
    if args.session_id == 'all':
        ids = list_session_ids(config.session_dir)
    else:
        ids = [args.session_id]
    for sid in ids:
        Session.load(config.session_dir, sid).delete()
        print_message(options, f"Session '{sid}' cleared successfully.", sessionId=sid)
    return 0


# share

def cmd_share_download(args, config: Config, options: GlobalOptions) -> int:
    expiry = parse_expiry(args.expire)
    client = new_client(args.url, config)
    share_url = client.share_download(expiry)
    db = get_share_db(config.share_dir, 'download')
    db.add(share_url, client.url, expiry)
    db.save()
    print_message(options, f"URL: {client.url}\nExpire: {format_duration_seconds(expiry)}\nShare: {share_url}",
                  url=client.url, shareURL=share_url, expiry=expiry)
    return 0


def cmd_share_upload(args, config: Config, options: GlobalOptions) -> int:
    expiry = parse_expiry(args.expire)
    client = new_client(args.url, config)
    if not isinstance(client, S3Client):
        raise S3RequestError(f"Sharing is not supported for '{args.url}'.")
    fields = client.share_upload(expiry, args.content_type)
    command = curl_command(client.bucket_url, fields)
    db = get_share_db(config.share_dir, 'upload')
    db.add(command, client.url, expiry, args.content_type)
    db.save()
    print_message(options, f"URL: {client.url}\nExpire: {format_duration_seconds(expiry)}\nShare: {command}",
                  url=client.url, shareURL=command, expiry=expiry)
    return 0


def cmd_share_list(args, config: Config, options: GlobalOptions) -> int:
    db = get_share_db(config.share_dir, args.kind)
    shares = db.active()
    db.save()
    for share_url, entry, left in shares:
        print_message(options,
                      f"URL: {entry['url']}\nExpire: {format_duration(left)}\nShare: {share_url}\n",
                      url=entry['url'], shareURL=share_url, timeLeft=int(left.total_seconds()),
                      contentType=entry.get('contentType', ''))
    return 0


def format_duration_seconds(seconds: int) -> str:
    return format_duration(datetime.timedelta(seconds=seconds))


# mb

def cmd_mb(args, config: Config, options: GlobalOptions) -> int:
    client = new_client(args.url, config)
    client.make_bucket(args.region)
    print_message(options, f"Bucket created successfully '{args.url}'.", bucket=args.url)
    return 0


# request: one signed request, printed in full

def content_md5(reader: BinaryIO) -> str:
    """base64 MD5 of a seekable stream, which is rewound afterwards"""
    start = reader.tell()
    md5 = hashlib.md5()
    for chunk in iter(lambda: reader.read(STREAM_CHUNK_SIZE), b''):
        md5.update(chunk)
    reader.seek(start)
    return base64.b64encode(md5.digest()).decode('ascii')


def _is_text(content_type: str) -> bool:
    return any(t in content_type for t in ('xml', 'json', 'text'))


def request_lines(prep: requests.PreparedRequest) -> List[str]:
    lines = [f"{prep.method} {prep.path_url} HTTP/1.1"]
    lines.extend(f"{name}: {value}" for name, value in prep.headers.items())
    body = prep.body if isinstance(prep.body, bytes) else b''
    lines.append('')
    lines.append(f"[Request body: {format_bytes(len(body))}]" if body else "[No request body]")
    return lines


def response_lines(resp: requests.Response, timing: Dict[str, float]) -> List[str]:
    lines = [f"HTTP/1.1 {resp.status_code} {resp.reason}"]
    lines.extend(f"{name}: {value}" for name, value in resp.headers.items())
    if timing:
        lines.append('')
        lines.extend(f"{key}: {value:.3f}s" for key, value in timing.items())
    lines.append('')
    if resp.content:
        if _is_text(resp.headers.get('Content-Type', '')):
            lines.append(resp.text)
        else:
            lines.append(f"[Binary response: {format_bytes(len(resp.content))}]")
    return lines


def save_exchange(filename: str, prep: requests.PreparedRequest, resp: requests.Response,
                  timing: Dict[str, float]) -> None:
    """Write request and response to filename for later inspection"""
    with open(filename, 'w') as f:
        f.write("=== REQUEST ===\n")
        f.write('\n'.join(request_lines(prep)) + '\n')
        f.write("\n=== RESPONSE ===\n")
        f.write('\n'.join(response_lines(resp, timing)) + '\n')


@timing_decorator
def sign_and_send(session: requests.Session, method: str, url: str, headers: Dict[str, str],
                  body: bytes, timeout: int = 30):
    """Sign (through the session's auth) and send one request; returns (prepared, response, timing)"""
    prep = session.prepare_request(
        requests.Request(method=method, url=url, headers=headers, data=body or None))
    start = time.time()
    resp = session.send(prep, verify=True, timeout=timeout)
    timing = {'total_time': time.time() - start, 'response_time': resp.elapsed.total_seconds()}
    return prep, resp, timing


def print_exchange(prep: requests.PreparedRequest, resp: requests.Response,
                   timing: Dict[str, float], json_output: bool = False) -> None:
    if json_output:
        print(json.dumps({
            'status_code': resp.status_code,
            'reason': resp.reason,
            'headers': dict(resp.headers),
            'body': resp.text if _is_text(resp.headers.get('Content-Type', '')) else '',
            'timing': timing,
        }, indent=2))
        return
    print("=== REQUEST ===")
    print('\n'.join(request_lines(prep)))
    print("\n=== RESPONSE ===")
    print('\n'.join(response_lines(resp, timing)))
    sys.stdout.flush()


def parse_header_args(lines: List[str]) -> Dict[str, str]:
    """'Name: value' strings -> headers; repeated x-amz-* names are comma-joined"""
    headers: Dict[str, str] = {}
    for line in lines:
        m = re.match(r'([^:]+):\s*(.*)', line)
        if not m:
            logging.warning(f"Cannot parse header: {line}")
            continue
        name, value = m.group(1).strip(), m.group(2)
        if name.lower().startswith('x-amz-'):
            name = name.lower()
            if name in headers:
                headers[name] += f",{value}"
                continue
        headers[name] = value
    return headers


def request_authenticator(args, config: Config, url: str) -> RequestAuthenticator:
    host = config.host_for_url(url)
    access_key = args.access_key or (host.access_key if host else '')
    secret_key = args.secret_key or (host.secret_key if host else '')
    if args.secret_key:
        logging.warning("Using --secret-key on command line is insecure. Proceeding...")
    region = args.region or (host.region if host else guess_region_from_host(urlsplit(url).hostname or ''))
    version = args.signature or (host.api if host else None)
    return RequestAuthenticator(access_key, secret_key, region, version)


def read_body(path: str) -> bytes:
    if not os.path.isfile(path):
        raise ConfigurationError(f"File not found: {path}")
    with open(path, 'rb') as f:
        return f.read()


def request_method(args) -> str:
    if args.put:
        return 'PUT'
    if args.post is not None:
        return 'POST'
    if args.head:
        return 'HEAD'
    if args.delete:
        return 'DELETE'
    return (args.method or 'GET').upper()


def cmd_request(args, config: Config, options: GlobalOptions) -> int:
    _, url = config.expand_alias(args.url)
    if urlsplit(url).scheme not in ('http', 'https'):
        raise ConfigurationError(f"Invalid URL: {args.url}")
    authenticator = request_authenticator(args, config, url)

    method = request_method(args)
    body_path = args.put or args.post
    body = read_body(body_path) if body_path else b''

    headers = parse_header_args(args.header)
    if args.acl:
        headers['x-amz-acl'] = args.acl
    if args.content_md5:
        headers['Content-MD5'] = args.content_md5
    elif args.calculate_content_md5:
        headers['Content-MD5'] = content_md5(io.BytesIO(body))
    if args.content_type:
        headers['Content-Type'] = args.content_type

    session = create_session(authenticator, max_retries=args.retries)
    try:
        prep, resp, timing = sign_and_send(session, method, url, headers, body, timeout=args.timeout)
    finally:
        session.close()
    if args.save_request:
        save_exchange(args.save_request, prep, resp, timing)
    print_exchange(prep, resp, timing, options.json)
    return 0 if resp.ok else 1


# parser

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='s3shuttle',
        description="Resumable copies, sharing and signed requests for S3 compatible storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Copy a folder, resumable if interrupted
  %(prog)s cp --recursive ./photos play/mybucket/

  # List and resume interrupted copies
  %(prog)s session list
  %(prog)s session resume aBcDeFgH

  # Share an object for a day
  %(prog)s share download --expire 24h play/mybucket/report.pdf

  # One signed request, printed in full
  %(prog)s request --head https://mybucket.s3.amazonaws.com/file.txt
        """
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('--config-dir', default='',
                        help='Configuration folder (default: $S3SHUTTLE_CONFIG_DIR or ~/.s3shuttle)')
    parser.add_argument('--quiet', action='store_true', help='Only show warnings and errors')
    parser.add_argument('--debug', action='store_true', help='Show debug info on console')
    parser.add_argument('--json', action='store_true', help='Output in JSON format')
    parser.add_argument('--no-color', action='store_true', help='Disable colored output')
    parser.add_argument('--log-file', help='Capture full debug info in a log file')
    commands = parser.add_subparsers(dest='command', required=True)

    cp = commands.add_parser('cp', help='Copy objects and files, resumable')
    cp.add_argument('sources', nargs='+', metavar='SOURCE')
    cp.add_argument('target', metavar='TARGET')
    cp.add_argument('-r', '--recursive', action='store_true', help='Copy folders recursively')
    cp.add_argument('--workers', type=int, default=DEFAULT_WORKERS,
                    help=f"Number of concurrent copies (default: {DEFAULT_WORKERS})")
    cp.set_defaults(func=cmd_cp)

    session = commands.add_parser('session', help='Manage interrupted copies')
    session_commands = session.add_subparsers(dest='session_command', required=True)
    s = session_commands.add_parser('list', help='List resumable sessions')
    s.set_defaults(func=cmd_session_list)
    s = session_commands.add_parser('resume', help='Resume a session')
    s.add_argument('session_id')
    s.set_defaults(func=cmd_session_resume)
    s = session_commands.add_parser('clear', help="Remove a session, or 'all'")
    s.add_argument('session_id')
    s.set_defaults(func=cmd_session_clear)

    share = commands.add_parser('share', help='Generate URLs for temporary access')
    share_commands = share.add_subparsers(dest='share_command', required=True)
    s = share_commands.add_parser('download', help='Pre-signed URL to download an object')
    s.add_argument('url')
    s.add_argument('--expire', default=DEFAULT_EXPIRY, help=f"Validity, at most 7d (default: {DEFAULT_EXPIRY})")
    s.set_defaults(func=cmd_share_download)
    s = share_commands.add_parser('upload', help='curl command to upload an object')
    s.add_argument('url')
    s.add_argument('--expire', default=DEFAULT_EXPIRY, help=f"Validity, at most 7d (default: {DEFAULT_EXPIRY})")
    s.add_argument('--content-type', default='', help='Required Content-Type of the upload')
    s.set_defaults(func=cmd_share_upload)
    s = share_commands.add_parser('list', help='List shares that have not expired')
    s.add_argument('kind', choices=['download', 'upload'])
    s.set_defaults(func=cmd_share_list)

    mb = commands.add_parser('mb', help='Make a bucket')
    mb.add_argument('url')
    mb.add_argument('--region', default='', help='Bucket location constraint')
    mb.set_defaults(func=cmd_mb)

    req = commands.add_parser('request', help='Send one signed request and show it in full')
    req.add_argument('url')
    req.add_argument('-X', '--method', help='HTTP method (default: GET)')
    req.add_argument('-H', '--header', action='append', default=[], help="'Header: value', repeatable")
    req.add_argument('--put', help='PUT from local file.')
    req.add_argument('--post', nargs='?', const='', help='POST, optionally from file.')
    req.add_argument('--head', action='store_true', help='HEAD request')
    req.add_argument('--delete', action='store_true', help='DELETE request')
    req.add_argument('--acl', help='x-amz-acl: public-read, private, etc.')
    req.add_argument('--content-type', default='', help='Content-Type header')
    req.add_argument('--content-md5', default='', help='Content-MD5 header')
    req.add_argument('--calculate-content-md5', action='store_true',
                     help='Calculate Content-MD5 automatically')
    req.add_argument('--access-key', default='', help='Access key (default: from config)')
    req.add_argument('--secret-key', default='', help='Secret key (unsafe on command line).')
    req.add_argument('--region', default='', help='Region (auto-detected if not specified)')
    req.add_argument('--signature', default='', help='S3v4 (default) or S3v2')
    req.add_argument('--timeout', type=int, default=30, help='Request timeout in seconds (default: 30)')
    req.add_argument('--retries', type=int, default=3, help='Max number of retries (default: 3)')
    req.add_argument('--save-request', default='', help='Save request & response to file')
    req.set_defaults(func=cmd_request)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    options = GlobalOptions(quiet=args.quiet, debug=args.debug, json=args.json, no_color=args.no_color)
    options.apply(args.log_file)

    try:
        config = Config.load(args.config_dir)
        for sid in migrate_sessions(config.session_dir):
            logging.info(f"Removed unusable session '{sid}'.")
        return args.func(args, config, options)
    except S3ShuttleError as e:
        logging.error(str(e))
        return 1
    except requests.RequestException as e:
        logging.error(f"Request failed: {e}")
        return 1
