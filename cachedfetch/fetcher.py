from functools import partial
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from .cache import Cache, MemoryCache
from .keys import KeyFlags, DEFAULT_KEY_FLAGS, derive_key, is_only_if_cached
from .locks import KeyedLock
from .model import (BytesBody, FileBody, FormBody, MultipartBody, Request, TextBody, TransportResponse,
                    coerce_body)
from .response import CachedResponse


logger = logging.getLogger(__name__)

Transport = Callable[[Request], TransportResponse]

# Shared by every `FetchWithCache` that is not given its own lock service.
process_locks = KeyedLock()


def raw_headers(headers: Mapping[str, str]) -> Dict[str, List[str]]:
    return {name.lower(): [value] for name, value in headers.items()}


def response_headers(response: requests.Response) -> Dict[str, List[str]]:
    """
    The headers of `response`, keeping every value of a repeated header such as `Set-Cookie` apart.
    """
    received = getattr(response.raw, 'headers', None)
    if not hasattr(received, 'getlist'):
        return raw_headers(response.headers)
    result = {}  # type: Dict[str, List[str]]
    for name in received:
        result.setdefault(name.lower(), list(received.getlist(name)))
    return result


def declared_size(headers: Mapping[str, str]) -> int:
    length = headers.get('content-length', '')
    return int(length) if length.isdigit() else 0


class RequestsTransport:
    """
    Fetches requests over the network with `requests`.

    A request whose `agent` is a `requests.Session` is sent with that session. Any other request is sent with the
    transport's own session.
    """

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.__session = session or requests.Session()

    def __call__(self, request: Request) -> TransportResponse:
        session = request.agent if isinstance(request.agent, requests.Session) else self.__session
        headers = {name: value if isinstance(value, str) else ', '.join(value)
                   for name, value in request.headers.items()}
        data, content_type = self._encode_body(request.body)
        if content_type is not None and not any(name.lower() == 'content-type' for name in headers):
            headers['Content-Type'] = content_type

        kw = dict(request.options)  # type: Dict[str, Any]
        kw.pop('stream', None)
        kw.setdefault('allow_redirects', request.redirect == 'follow')
        kw.update(request.transport_options)

        logger.info('Sending {} {}'.format(request.method, request.url))
        try:
            response = session.request(request.method, request.url, headers=headers, data=data, stream=True, **kw)
        finally:
            if hasattr(data, 'close'):
                data.close()

        if hasattr(response.raw, 'decode_content'):
            response.raw.decode_content = True
        return TransportResponse(status=response.status_code,
                                 status_text=response.reason or '',
                                 url=response.url,
                                 headers=response_headers(response),
                                 body=response.raw,
                                 counter=len(response.history),
                                 size=declared_size(response.headers),
                                 release=response.close)

    @staticmethod
    def _encode_body(body: Any):
        if body is None:
            return None, None
        if isinstance(body, TextBody):
            return body.text.encode('utf-8'), 'text/plain;charset=UTF-8'
        if isinstance(body, FormBody):
            return body.encode(), 'application/x-www-form-urlencoded;charset=UTF-8'
        if isinstance(body, FileBody):
            return open(body.path, 'rb'), None
        if isinstance(body, MultipartBody):
            return body.encode(), body.content_type
        if isinstance(body, BytesBody):
            return body.data, None
        raise TypeError('Cannot send a body of type {}'.format(type(body).__name__))

    def close(self) -> None:
        self.__session.close()


class FetchWithCache:
    """
    Fetches requests, serving them from a cache whenever it holds an entry for them.

    Concurrent misses for the same cache key result in a single fetch: the first caller fetches and populates the
    cache while the others wait, and then read what it stored.
    """

    def __init__(self, cache: Optional[Cache] = None, key_flags: Optional[KeyFlags] = None,
                 transport: Optional[Transport] = None, locks: Optional[KeyedLock] = None) -> None:
        self.cache = cache if cache is not None else MemoryCache()
        self.key_flags = key_flags or DEFAULT_KEY_FLAGS
        self.transport = transport if transport is not None else RequestsTransport()
        self.locks = locks if locks is not None else process_locks

    def with_cache(self, cache: Cache, key_flags: Optional[KeyFlags] = None) -> 'FetchWithCache':
        """
        Create a fetcher that shares this one's transport and locks but uses `cache` and `key_flags`.
        """
        return FetchWithCache(cache, key_flags or self.key_flags, self.transport, self.locks)

    def cache_key(self, request: Request) -> str:
        return derive_key(request, self.key_flags)

    def __call__(self, url: str, method: str = 'GET', headers: Optional[Mapping[str, Any]] = None, body: Any = None,
                 **kwargs) -> Optional[CachedResponse]:
        """
        Fetch `url`. The remaining keyword arguments are fields of `Request`. `auth`, `hooks` and `cert` go to the
        transport without taking part in the cache key, `session` is taken as the `agent`, and anything else becomes
        one of the `options`.
        """
        return self.fetch(build_request(url, method, headers, body, **kwargs))

    def fetch(self, request: Request, transport: Optional[Transport] = None) -> Optional[CachedResponse]:
        """
        Fetch `request`, from the cache if possible.

        @param request
          The request to fetch.
        @param transport
          Overrides the transport for this call only.
        @return
          The response, or `None` if `request` is only-if-cached and there is no cache entry for it.
        @raise UnsupportedBodyKind
          If the request body is not a supported kind.
        @raise StorageFailure
          If the fetched response could not be cached.
        """
        key = self.cache_key(request)
        eject = partial(self.cache.remove, key)

        cached = self.cache.get(key)
        if cached is not None:
            logger.info('Cache hit for {} {}'.format(request.method, request.url))
            return CachedResponse(cached.body, cached.metadata, eject, True)

        if is_only_if_cached(request):
            logger.info('Cache miss for only-if-cached request {} {}'.format(request.method, request.url))
            return None

        self.locks.lock(key)
        try:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info('Cache was populated by a concurrent fetch of {} {}'.format(request.method, request.url))
                return CachedResponse(cached.body, cached.metadata, eject, True)

            logger.info('Cache miss for {} {}. Fetching.'.format(request.method, request.url))
            response = (transport or self.transport)(request)
            try:
                stored = self.cache.set(key, response.body, response.to_metadata())
            finally:
                response.close()
            return CachedResponse(stored.body, stored.metadata, eject, False)
        finally:
            self.locks.unlock(key)

    def close(self) -> None:
        self.cache.close()


_REQUEST_FIELDS = frozenset({'cache', 'credentials', 'destination', 'integrity', 'redirect', 'referrer',
                             'referrer_policy', 'agent'})

# `requests` arguments that configure how a request is sent, not what is fetched.
TRANSPORT_ONLY_OPTIONS = frozenset({'auth', 'hooks', 'cert'})


def build_request(url: str, method: str = 'GET', headers: Optional[Mapping[str, Any]] = None, body: Any = None,
                  **kwargs) -> Request:
    if 'session' in kwargs:
        kwargs.setdefault('agent', kwargs.pop('session'))
    fields = {name: kwargs.pop(name) for name in list(kwargs) if name in _REQUEST_FIELDS}
    transport_options = {name: kwargs.pop(name) for name in list(kwargs) if name in TRANSPORT_ONLY_OPTIONS}
    options = kwargs.pop('options', {})
    return Request(url=url,
                   method=method.upper(),
                   headers=dict(headers or {}),
                   body=coerce_body(body),
                   options=dict(options, **kwargs),
                   transport_options=transport_options,
                   **fields)
