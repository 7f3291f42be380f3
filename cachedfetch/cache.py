from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from io import BytesIO
import json
import logging
import math
from pathlib import Path
import threading
import time
from typing import Any, BinaryIO, Dict, List, Optional

import cachetools

from .blobstore import DEFAULT_PRUNE_GRACE_PERIOD, BlobStore, NoData
from .model import CachedValue, ResponseMetadata
from .util import DataclassJSONDecoder, DataclassJSONEncoder, drain


logger = logging.getLogger(__name__)


class StorageFailure(Exception):
    """
    Raised when a cache cannot read or write its storage for any reason other than the entry being absent.
    """


class Cache(ABC):
    """
    An abstraction of a response cache.

    A response cache has a relatively narrow scope: to remember a response under a cache key such that it can be
    recalled later. Entries may expire after a time-to-live, but deciding what to cache and when to evict early is left
    to the users of the cache.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[CachedValue]:
        """
        Retrieve the response cached under `key`.

        @param key
          The cache key to look up.
        @return
          The cached response with a fresh body stream, or `None` if there is none or it has expired.
        """

    @abstractmethod
    def set(self, key: str, body: BinaryIO, metadata: ResponseMetadata) -> CachedValue:
        """
        Add a response to the cache, replacing any existing entry for `key`.

        Note that `body` is read to exhaustion. The component using the cache should read from the returned value's
        body instead.

        @param key
          The cache key to store the response under.
        @param body
          The response body.
        @param metadata
          Everything else about the response.
        @return
          What was just stored, with a fresh body stream.
        @raise StorageFailure
          If the response could not be stored.
        """

    @abstractmethod
    def remove(self, key: str) -> None:
        """
        Delete the response cached under `key`, if any.
        """

    def close(self) -> None:
        """
        Close any resources associated with the cache.
        """


@dataclass
class _MemoryEntry:
    body: bytes
    metadata: ResponseMetadata


class MemoryCache(Cache):
    def __init__(self, ttl: Optional[float] = None) -> None:
        """
        @param ttl
          How many seconds an entry lives after it is set, or `None` for entries to live until removed.
        """
        if ttl is None:
            self.__entries = cachetools.Cache(maxsize=math.inf)  # type: cachetools.Cache
        else:
            self.__entries = cachetools.TTLCache(maxsize=math.inf, ttl=ttl)
        self.__lock = threading.RLock()

    def get(self, key: str) -> Optional[CachedValue]:
        with self.__lock:
            entry = self.__entries.get(key)
        if entry is None:
            return None
        return CachedValue(body=BytesIO(entry.body), metadata=entry.metadata)

    def set(self, key: str, body: BinaryIO, metadata: ResponseMetadata) -> CachedValue:
        entry = _MemoryEntry(body=drain(body), metadata=metadata)
        with self.__lock:
            # Replacing an entry restarts its time-to-live.
            self.__entries[key] = entry
        logger.info('Cached {} bytes under {}'.format(len(entry.body), key))
        return CachedValue(body=BytesIO(entry.body), metadata=entry.metadata)

    def remove(self, key: str) -> None:
        with self.__lock:
            self.__entries.pop(key, None)

    def __len__(self) -> int:
        with self.__lock:
            if isinstance(self.__entries, cachetools.TTLCache):
                self.__entries.expire()
            return len(self.__entries)


@dataclass
class FileCacheMetaModel:
    metadata: Dict[str, Any]
    body_digest: Optional[str] = None
    empty: bool = False
    expiration: Optional[int] = None
    """
    Milliseconds since the epoch after which the entry is expired.
    """


def _now_millis() -> int:
    return int(time.time() * 1000)


class FileSystemCache(Cache):
    def __init__(self, directory: Path = Path('.cache'), ttl: Optional[float] = None,
                 directory_levels: int = 2) -> None:
        """
        Initialize the file system cache.

        @param directory
          The path to the root directory of the cache.
        @param ttl
          How many seconds an entry lives after it is set, or `None` for entries to live until removed.
        @param directory_levels
          The number of subdirectory levels to use in the cache directory.
        """
        self.__ttl = ttl
        self.__store = BlobStore(Path(directory), directory_levels)

    @property
    def store(self) -> BlobStore:
        return self.__store

    @staticmethod
    def _keys(key: str) -> List[str]:
        return [key + 'body', key + 'meta']

    def _load_meta(self, key: str) -> Optional[FileCacheMetaModel]:
        _, meta_key = self._keys(key)
        info = self.__store.get_info(meta_key)
        if info is None:
            return None
        try:
            meta_bytes = self.__store.read_by_digest(info.digest)
            return json.loads(meta_bytes.decode('utf-8'), cls=DataclassJSONDecoder, class_type=FileCacheMetaModel)
        except OSError:
            logger.warning('Metadata content for {} is missing or unreadable'.format(key))
            return None
        except (ValueError, TypeError):
            logger.warning('Found a corrupt metadata record for {}'.format(key))
            return None

    def _open(self, key: str, meta: FileCacheMetaModel) -> Optional[CachedValue]:
        try:
            metadata = ResponseMetadata(**meta.metadata)
        except TypeError:
            logger.warning('Found a corrupt metadata record for {}'.format(key))
            return None

        if meta.empty:
            return CachedValue(body=BytesIO(b''), metadata=metadata)
        if meta.body_digest is None:
            logger.warning('Metadata record for {} has no body'.format(key))
            return None
        try:
            body = self.__store.open_by_digest(meta.body_digest)
        except OSError:
            logger.warning('Body content for {} is missing or unreadable'.format(key))
            return None
        return CachedValue(body=body, metadata=metadata)

    def get(self, key: str) -> Optional[CachedValue]:
        logger.info('Looking at the file system for a cache entry for {}'.format(key))
        meta = self._load_meta(key)
        if meta is None:
            logger.info('No matching cache entry found.')
            return None
        if meta.expiration is not None and meta.expiration < _now_millis():
            logger.info('Cache entry {} has expired.'.format(key))
            return None
        return self._open(key, meta)

    def set(self, key: str, body: BinaryIO, metadata: ResponseMetadata) -> CachedValue:
        body_key, meta_key = self._keys(key)
        meta = FileCacheMetaModel(metadata=asdict(metadata))
        if self.__ttl is not None:
            meta.expiration = _now_millis() + int(self.__ttl * 1000)

        try:
            logger.info('Writing response body for {}'.format(key))
            meta.body_digest = self.__store.put_stream(body_key, body)
        except NoData:
            logger.info('Response body for {} is empty'.format(key))
            meta.empty = True
        except OSError as e:
            raise StorageFailure('Could not store the response body for {}'.format(key)) from e

        try:
            logger.info('Writing metadata for {}'.format(key))
            self.__store.put(meta_key, json.dumps(meta, cls=DataclassJSONEncoder).encode('utf-8'))
        except OSError as e:
            raise StorageFailure('Could not store the metadata for {}'.format(key)) from e

        value = self._open(key, meta)
        if value is None:
            raise StorageFailure('The response stored for {} could not be read back'.format(key))
        return value

    def remove(self, key: str) -> None:
        for k in self._keys(key):
            self.__store.remove(k)

    def prune(self, grace_period: float = DEFAULT_PRUNE_GRACE_PERIOD) -> int:
        """
        Delete stored content that no entry refers to anymore and that is older than `grace_period` seconds.
        """
        return self.__store.prune(grace_period)
