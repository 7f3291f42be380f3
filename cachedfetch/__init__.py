"""
Caching for HTTP fetches.

`fetch` is ready to use with an in-memory cache. Use `with_cache` for a fetcher over another cache, such as a
`FileSystemCache`.
"""

from typing import Any, Optional, Union

from .adapter import CachedHTTPAdapter, create
from .blobstore import BlobStore, NoData
from .cache import Cache, FileSystemCache, MemoryCache, StorageFailure
from .fetcher import FetchWithCache, RequestsTransport, build_request
from .keys import CACHE_VERSION, KeyFlags, UnsupportedBodyKind, derive_key
from .locks import KeyedLock
from .model import (BytesBody, CachedValue, FileBody, FormBody, MultipartBody, MultipartField, Request,
                    ResponseMetadata, TextBody, TransportResponse)
from .response import BodyAlreadyConsumed, CachedResponse


fetch = FetchWithCache(MemoryCache())
with_cache = fetch.with_cache


def compute_cache_key(resource: Union[str, Request], key_flags: Optional[KeyFlags] = None, **kwargs: Any) -> str:
    """
    Compute the cache key a fetch of `resource` would use, so that a cache can be checked without fetching.

    `resource` is either a `Request` or a URL, in which case `kwargs` are as for `FetchWithCache.__call__`.
    """
    request = resource if isinstance(resource, Request) else build_request(resource, **kwargs)
    return derive_key(request, key_flags)
