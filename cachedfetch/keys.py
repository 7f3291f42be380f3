"""
Derivation of cache keys from requests.

A cache key is an MD5 digest of a canonical JSON rendering of the request. Only
the fields enabled in a `KeyFlags` take part, and the rendering is versioned so
that a change of format simply misses on old entries.
"""

from dataclasses import dataclass
import hashlib
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .model import BytesBody, FileBody, FormBody, MultipartBody, Request, TextBody


logger = logging.getLogger(__name__)

CACHE_VERSION = 1

ONLY_IF_CACHED = 'only-if-cached'


class UnsupportedBodyKind(Exception):
    def __init__(self, body: Any):
        super().__init__('Unsupported body type {}. Supported body types are: None, TextBody, FormBody, FileBody, '
                         'MultipartBody, BytesBody, str and bytes'.format(type(body).__name__))
        self.__body = body

    @property
    def body(self) -> Any:
        return self.__body


@dataclass(frozen=True)
class KeyFlags:
    """
    Which parts of a request take part in its cache key.

    `headers` may also be a mapping of lowercased header names to booleans, in which case every header is included
    except those mapped to `False`.
    """
    cache: bool = True
    credentials: bool = True
    destination: bool = True
    headers: Union[bool, Mapping[str, bool]] = True
    integrity: bool = True
    method: bool = True
    redirect: bool = True
    referrer: bool = True
    referrer_policy: bool = True
    url: bool = True
    body: bool = True
    options: bool = True

    def includes_header(self, name: str) -> bool:
        if isinstance(self.headers, bool):
            return self.headers
        return self.headers.get(name, True)


DEFAULT_KEY_FLAGS = KeyFlags()


def _directives(value: str) -> List[str]:
    return [d.strip() for d in value.split(',') if d.strip()]


def _header_values(value: Union[str, List[str]]) -> List[str]:
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def is_only_if_cached(request: Request) -> bool:
    """
    Whether the request forbids going to the network, either through its cache mode or a
    `Cache-Control: only-if-cached` header.
    """
    if request.cache == ONLY_IF_CACHED:
        return True
    for name, value in request.headers.items():
        if name.lower() != 'cache-control':
            continue
        for v in _header_values(value):
            if ONLY_IF_CACHED in (d.lower() for d in _directives(v)):
                return True
    return False


def canonical_headers(headers: Mapping[str, Any], flags: KeyFlags) -> Dict[str, List[str]]:
    result = {}  # type: Dict[str, List[str]]
    for name, value in headers.items():
        name = name.lower()
        if not flags.includes_header(name):
            continue
        values = _header_values(value)
        if name == 'cache-control':
            # only-if-cached decides whether to fetch, not what is fetched.
            values = [', '.join(d for d in _directives(v) if d.lower() != ONLY_IF_CACHED) for v in values]
            values = [v for v in values if v]
            if not values:
                continue
        result.setdefault(name, []).extend(values)
    return result


def canonical_body(body: Any) -> Any:
    if body is None:
        return None
    if isinstance(body, TextBody):
        return body.text
    if isinstance(body, FormBody):
        return body.encode()
    if isinstance(body, FileBody):
        return str(body.path)
    if isinstance(body, MultipartBody):
        fields = []
        for f in body.fields:
            if isinstance(f.value, bytes):
                value = {'bytes': f.value.hex()}
            else:
                value = f.value.replace(body.boundary, '')
            fields.append([f.name, value, f.filename, f.content_type])
        return {'multipart': fields}
    if isinstance(body, BytesBody):
        # Invalid UTF-8 stays distinct instead of collapsing into replacement characters.
        return body.data.decode('utf-8', errors='surrogateescape')
    raise UnsupportedBodyKind(body)


def serializable_options(options: Mapping[str, Any]) -> Dict[str, Any]:
    """
    The options that can be rendered as JSON. Anything else, such as an auth object or a mapping that refers to
    itself, only matters to the transport and is left out of the key.
    """
    result = {}  # type: Dict[str, Any]
    for name, value in options.items():
        try:
            json.dumps(value, sort_keys=True)
        except (TypeError, ValueError):
            logger.debug('Leaving option {} out of the cache key'.format(name))
            continue
        result[name] = value
    return result


def key_material(request: Request, flags: KeyFlags = DEFAULT_KEY_FLAGS) -> List[Any]:
    """
    Build the structure that is hashed into the cache key of `request`.

    @raise UnsupportedBodyKind
        If the body of `request` is not one of the supported kinds.
    """
    cache_mode = request.cache if request.cache != ONLY_IF_CACHED else 'default'
    body = canonical_body(request.body)
    material = {
        'cache': cache_mode if flags.cache else '',
        'credentials': request.credentials if flags.credentials else '',
        'destination': request.destination if flags.destination else '',
        'headers': canonical_headers(request.headers, flags) if flags.headers is not False else '',
        'integrity': request.integrity if flags.integrity else '',
        'method': request.method.upper() if flags.method else '',
        'redirect': request.redirect if flags.redirect else '',
        'referrer': request.referrer if flags.referrer else '',
        'referrer_policy': request.referrer_policy if flags.referrer_policy else '',
        'url': request.url if flags.url else '',
        'body': body if flags.body else '',
    }
    options = serializable_options(request.options) if flags.options else {}
    return [material, options, CACHE_VERSION]


def derive_key(request: Request, flags: Optional[KeyFlags] = None) -> str:
    """
    Compute the cache key of `request`.

    @raise UnsupportedBodyKind
        If the body of `request` is not one of the supported kinds.
    """
    material = key_material(request, flags or DEFAULT_KEY_FLAGS)
    serialized = json.dumps(material, sort_keys=True, separators=(',', ':'))
    key = hashlib.md5(serialized.encode('utf-8')).hexdigest()
    logger.debug('Derived cache key {} for {} {}'.format(key, request.method, request.url))
    return key
