from io import BytesIO
from pathlib import Path
from typing import Optional

import requests
from requests.structures import CaseInsensitiveDict
from requests.adapters import HTTPAdapter

from .cache import Cache, FileSystemCache
from .fetcher import FetchWithCache, declared_size, response_headers
from .keys import KeyFlags
from .model import BytesBody, FileBody, Request, TextBody, TransportResponse


class CachedHTTPAdapter(HTTPAdapter):
    """
    A transport adapter that serves responses from a cache.

    Mount it on a `requests.Session` to cache everything sent through that session. Each hop of a redirect chain is
    cached on its own, since the session follows redirects above the adapter.
    """

    def __init__(self, cache: Cache, key_flags: Optional[KeyFlags] = None, *args, **kw) -> None:
        super().__init__(*args, **kw)
        self.cache = cache
        self.fetcher = FetchWithCache(cache, key_flags, transport=self._unsupported_transport)

    @staticmethod
    def _unsupported_transport(request: Request) -> TransportResponse:
        raise RuntimeError('CachedHTTPAdapter only fetches through send()')

    @staticmethod
    def _to_request(prepared: requests.PreparedRequest) -> Request:
        headers = CaseInsensitiveDict(prepared.headers)
        body = prepared.body
        if isinstance(body, str):
            body = TextBody(body)
        elif isinstance(body, bytes):
            boundary = multipart_boundary(headers.get('Content-Type', ''))
            if boundary is not None:
                # Drop the random boundary from both the body and its content type.
                body = body.replace(boundary.encode('latin-1'), b'')
                headers['Content-Type'] = 'multipart/form-data'
            body = BytesBody(body)
        elif hasattr(body, 'read') and isinstance(getattr(body, 'name', None), str):
            body = FileBody(body.name)
        return Request(url=prepared.url,
                       method=prepared.method,
                       headers=dict(headers),
                       body=body)

    def _send_uncached(self, prepared: requests.PreparedRequest, **kw) -> requests.Response:
        kw['stream'] = True
        return super().send(prepared, **kw)

    def send(self, requests_request: requests.PreparedRequest, **kw) -> requests.Response:
        """
        Send a request. Use the request information to see if it exists in the cache and cache the response if it
        does not.

        @raise UnsupportedBodyKind
          If the request body is neither text, bytes nor a named file.
        """
        def transport(request: Request) -> TransportResponse:
            response = self._send_uncached(requests_request, **kw)
            return TransportResponse(status=response.status_code,
                                     status_text=response.reason or '',
                                     url=response.url or request.url,
                                     headers=response_headers(response),
                                     body=response.raw,
                                     size=declared_size(response.headers),
                                     release=response.close)

        cached = self.fetcher.fetch(self._to_request(requests_request), transport=transport)

        result = requests.Response()
        result.request = requests_request
        result.connection = self
        if cached is None:
            # Nothing cached for an only-if-cached request.
            result.status_code = 504
            result.reason = 'Gateway Timeout'
            result.raw = BytesIO(b'')
            result.url = requests_request.url
            result.from_cache = False
            result.eject_from_cache = lambda: None
            return result

        result.status_code = cached.status
        result.reason = cached.status_text
        result.headers = CaseInsensitiveDict(cached.headers)
        result.raw = cached.stream()
        result.url = cached.url
        result.from_cache = cached.from_cache
        result.eject_from_cache = cached.eject_from_cache
        return result

    def close(self):
        self.cache.close()
        super().close()


def multipart_boundary(content_type: str) -> Optional[str]:
    """
    The boundary parameter of a `multipart/form-data` content type, or `None` for any other content type.
    """
    media_type, *params = content_type.split(';')
    if media_type.strip().lower() != 'multipart/form-data':
        return None
    for param in params:
        name, _, value = param.strip().partition('=')
        if name.lower() == 'boundary' and value:
            return value.strip('"')
    return None


def create(directory: Path, ttl: Optional[float] = None) -> CachedHTTPAdapter:
    return CachedHTTPAdapter(FileSystemCache(directory, ttl))
