"""
A content-addressed blob store on the local file system.

Blobs are stored once per distinct content under `content/`, named by their SHA-256 digest. Keys map to blobs through
small JSON index files under `index/`. Removing a key only removes its index file, so content shared by several keys
survives until `prune()` finds it unreferenced.
"""

from dataclasses import dataclass
import hashlib
from io import BytesIO
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
import time
from typing import BinaryIO, Iterator, Optional, Set

from .util import DataclassJSONDecoder, DataclassJSONEncoder, clamp, iter_chunks


logger = logging.getLogger(__name__)


DEFAULT_PRUNE_GRACE_PERIOD = 60.0


class NoData(Exception):
    """
    Raised when a blob stream yields no bytes at all.
    """


@dataclass
class BlobInfo:
    key: str
    digest: str
    size: int
    time: int


class BlobStore:
    def __init__(self, directory: Path, directory_levels: int = 2) -> None:
        """
        Initialize the blob store.

        @param directory
          The path to the root directory of the store.
        @param directory_levels
          The number of subdirectory levels to use for index and content files. This will be clamped to be between 0
          and 20, respectively.
        """
        self.__directory = Path(directory)
        self.__index_directory = self.__directory / 'index'
        self.__content_directory = self.__directory / 'content'
        self.__tmp_directory = self.__directory / 'tmp'
        self.__directory_levels = clamp(directory_levels, 0, 20)

    @property
    def directory(self) -> Path:
        return self.__directory

    def _split_path(self, hashed: str) -> Path:
        subdirectories = (list(hashed[:self.__directory_levels])
                          + [hashed[self.__directory_levels:]])
        return Path(*subdirectories)

    def _index_path(self, key: str) -> Path:
        hashed = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return self.__index_directory / self._split_path(hashed)

    def _content_path(self, digest: str) -> Path:
        return self.__content_directory / self._split_path(digest)

    def _temporary_file(self, mode: str):
        self.__tmp_directory.mkdir(parents=True, exist_ok=True)
        return tempfile.NamedTemporaryFile(mode=mode, dir=str(self.__tmp_directory), delete=False)

    def put_stream(self, key: str, stream: BinaryIO) -> str:
        """
        Store everything read from `stream` under `key`.

        @return
          The digest of the stored content.
        @raise NoData
          If `stream` is empty. Nothing is stored in that case.
        """
        hasher = hashlib.sha256()
        size = 0
        temp_file = self._temporary_file('wb')
        try:
            with temp_file:
                for chunk in iter_chunks(stream):
                    hasher.update(chunk)
                    temp_file.write(chunk)
                    size += len(chunk)
            if size == 0:
                raise NoData('No data was read for {}'.format(key))

            digest = hasher.hexdigest()
            content_path = self._content_path(digest)
            try:
                # Touched so that prune() counts it as fresh until the index file below exists.
                os.utime(str(content_path))
                logger.info('Content {} is already stored. Discarding the duplicate.'.format(digest))
            except FileNotFoundError:
                logger.info('Moving temporary content file into permanent location')
                content_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(temp_file.name, str(content_path))
        finally:
            if os.path.exists(temp_file.name):
                os.unlink(temp_file.name)

        self._write_index(BlobInfo(key=key, digest=digest, size=size, time=int(time.time() * 1000)))
        return digest

    def put(self, key: str, data: bytes) -> str:
        return self.put_stream(key, BytesIO(data))

    def _write_index(self, info: BlobInfo) -> None:
        index_path = self._index_path(info.key)
        logger.info('Creating index file for {} that points to content {}'.format(info.key, info.digest))
        index_path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self._temporary_file('w')
        with temp_file:
            json.dump(info, temp_file, cls=DataclassJSONEncoder)
        os.replace(temp_file.name, str(index_path))

    def get_info(self, key: str) -> Optional[BlobInfo]:
        """
        Look up the blob stored under `key`.

        @return
          The blob's info, or `None` if nothing is stored under `key` or its index file is unreadable.
        """
        index_path = self._index_path(key)
        try:
            with open(index_path, 'r') as f:
                info = json.load(f, cls=DataclassJSONDecoder, class_type=BlobInfo)
        except FileNotFoundError:
            return None
        except OSError:
            logger.warning('Could not read the index file for {}'.format(key))
            return None
        except (ValueError, TypeError):
            logger.warning('Found a corrupt index file for {}. Deleting it.'.format(key))
            self._unlink(index_path)
            return None
        if info.key != key:
            logger.warning('Index file for {} belongs to {}. Ignoring it.'.format(key, info.key))
            return None
        return info

    def open_by_digest(self, digest: str) -> BinaryIO:
        """
        @raise FileNotFoundError
          If no content with `digest` is stored.
        """
        return open(self._content_path(digest), 'rb')

    def read_by_digest(self, digest: str) -> bytes:
        with self.open_by_digest(digest) as f:
            return f.read()

    def remove(self, key: str) -> None:
        logger.info('Removing index file for {}'.format(key))
        self._unlink(self._index_path(key))

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def _iter_files(self, directory: Path) -> Iterator[Path]:
        if not directory.exists():
            return iter(())
        return (p for p in directory.rglob('*') if p.is_file())

    def prune(self, grace_period: float = DEFAULT_PRUNE_GRACE_PERIOD) -> int:
        """
        Delete content that no index file refers to.

        Content is moved into place before the index file that refers to it is written, so content younger than
        `grace_period` is left alone: it may belong to a `put` that is still in progress.

        @param grace_period
          How many seconds old unreferenced content must be before it is deleted.
        @return
          The number of content files deleted.
        """
        referenced = set()  # type: Set[str]
        for index_path in self._iter_files(self.__index_directory):
            try:
                with open(index_path, 'r') as f:
                    referenced.add(json.load(f)['digest'])
            except (OSError, ValueError, KeyError):
                logger.warning('Skipping unreadable index file {}'.format(index_path))

        cutoff = time.time() - grace_period
        deleted = 0
        for content_path in list(self._iter_files(self.__content_directory)):
            digest = ''.join(content_path.relative_to(self.__content_directory).parts)
            if digest in referenced:
                continue
            try:
                if content_path.stat().st_mtime > cutoff:
                    continue
            except FileNotFoundError:
                continue
            logger.info('Deleting unreferenced content {}'.format(digest))
            self._unlink(content_path)
            deleted += 1
        return deleted
