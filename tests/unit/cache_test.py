from ddt import ddt, data, unpack
from io import BytesIO
import json
from mockito import when, unstub
from pathlib import Path
from tempfile import TemporaryDirectory
import threading
import time
from unittest import TestCase

from cachedfetch.cache import FileSystemCache, MemoryCache, StorageFailure
from cachedfetch.model import ResponseMetadata


METADATA = ResponseMetadata(
    url='http://google.ca',
    status=200,
    status_text='OK',
    headers={
        'content-type': ['application/pdf'],
        'set-cookie': ['a=1', 'b=2'],
    },
    size=13,
    counter=1,
)


class MemoryCacheFactory:
    def __call__(self, ttl=None):
        return MemoryCache(ttl)

    def close(self):
        pass


class FileSystemCacheFactory:
    def __init__(self):
        self.directory = TemporaryDirectory()

    def __call__(self, ttl=None):
        return FileSystemCache(Path(self.directory.name), ttl)

    def close(self):
        self.directory.cleanup()


@ddt
class TestCaches(TestCase):
    """
    Behaviour shared by every cache.
    """

    def setUp(self):
        self.__factories = []

    def tearDown(self):
        for factory in self.__factories:
            factory.close()

    def _create(self, factory_type, ttl=None):
        factory = factory_type()
        self.__factories.append(factory)
        cache = factory(ttl)
        self.addCleanup(cache.close)
        return cache

    @data(
        (MemoryCacheFactory, b'some contents'),
        (MemoryCacheFactory, b''),
        (FileSystemCacheFactory, b'some contents'),
        (FileSystemCacheFactory, b''),
        (FileSystemCacheFactory, bytes(range(256)) * 1024),
    )
    @unpack
    def test_set_then_get(self, factory_type, body):
        cache = self._create(factory_type)

        stored = cache.set('key', BytesIO(body), METADATA)
        with stored.body:
            self.assertEqual(body, stored.body.read(), 'The stored value should be readable right away')
        self.assertEqual(METADATA, stored.metadata)

        value = cache.get('key')
        self.assertIsNotNone(value)
        with value.body:
            self.assertEqual(body, value.body.read())
        self.assertEqual(METADATA, value.metadata)

    @data(MemoryCacheFactory, FileSystemCacheFactory)
    def test_get_is_repeatable(self, factory_type):
        cache = self._create(factory_type)
        cache.set('key', BytesIO(b'contents'), METADATA)

        for _ in range(3):
            value = cache.get('key')
            with value.body:
                self.assertEqual(b'contents', value.body.read())

    @data(MemoryCacheFactory, FileSystemCacheFactory)
    def test_missing(self, factory_type):
        cache = self._create(factory_type)

        self.assertIsNone(cache.get('key'))

    @data(MemoryCacheFactory, FileSystemCacheFactory)
    def test_set_replaces(self, factory_type):
        cache = self._create(factory_type)
        cache.set('key', BytesIO(b'one'), METADATA).body.close()
        cache.set('key', BytesIO(b'two'), METADATA).body.close()

        value = cache.get('key')
        with value.body:
            self.assertEqual(b'two', value.body.read())

    @data(MemoryCacheFactory, FileSystemCacheFactory)
    def test_remove(self, factory_type):
        cache = self._create(factory_type)
        cache.set('key', BytesIO(b'contents'), METADATA).body.close()
        cache.set('other', BytesIO(b'contents'), METADATA).body.close()

        cache.remove('key')
        cache.remove('key')
        cache.remove('never-set')

        self.assertIsNone(cache.get('key'))
        other = cache.get('other')
        self.assertIsNotNone(other, 'Removing one key should not affect another')
        other.body.close()

    @data(MemoryCacheFactory, FileSystemCacheFactory)
    def test_ttl(self, factory_type):
        cache = self._create(factory_type, ttl=0.1)
        cache.set('key', BytesIO(b'contents'), METADATA).body.close()

        value = cache.get('key')
        self.assertIsNotNone(value, 'The entry should be present before its TTL elapses')
        value.body.close()

        time.sleep(0.3)

        self.assertIsNone(cache.get('key'), 'The entry should be gone after its TTL elapses')

    @data(MemoryCacheFactory, FileSystemCacheFactory)
    def test_set_restarts_ttl(self, factory_type):
        cache = self._create(factory_type, ttl=0.3)
        cache.set('key', BytesIO(b'one'), METADATA).body.close()
        time.sleep(0.2)
        cache.set('key', BytesIO(b'two'), METADATA).body.close()
        time.sleep(0.2)

        value = cache.get('key')
        self.assertIsNotNone(value, 'Setting the entry again should restart its TTL')
        value.body.close()


class TestMemoryCache(TestCase):
    def test_set_starts_no_threads(self):
        cache = MemoryCache(ttl=3600)
        before = threading.active_count()

        for i in range(300):
            cache.set(str(i), BytesIO(b'contents'), METADATA).body.close()

        self.assertEqual(before, threading.active_count())
        self.assertEqual(300, len(cache))

    def test_expired_entries_are_not_counted(self):
        cache = MemoryCache(ttl=0.1)
        cache.set('key', BytesIO(b'contents'), METADATA).body.close()
        self.assertEqual(1, len(cache))

        time.sleep(0.3)

        self.assertEqual(0, len(cache))

    def test_remove_then_set(self):
        cache = MemoryCache(ttl=0.3)
        cache.set('key', BytesIO(b'one'), METADATA).body.close()
        cache.remove('key')
        cache.set('key', BytesIO(b'two'), METADATA).body.close()

        value = cache.get('key')
        self.assertEqual(b'two', value.body.read())
        self.assertEqual(1, len(cache))


class TestFileSystemCache(TestCase):
    def setUp(self):
        self.__directory = TemporaryDirectory()
        self.__path = Path(self.__directory.name)
        self.__sut = FileSystemCache(self.__path)

    def tearDown(self):
        unstub()
        self.__directory.cleanup()

    def _meta(self, key):
        store = self.__sut.store
        return json.loads(store.read_by_digest(store.get_info(key + 'meta').digest).decode('utf-8'))

    def test_layout(self):
        self.__sut.set('key', BytesIO(b'contents'), METADATA).body.close()

        meta = self._meta('key')
        self.assertEqual(METADATA.status, meta['metadata']['status'])
        self.assertFalse(meta['empty'])
        self.assertIsNone(meta['expiration'])
        self.assertEqual(self.__sut.store.get_info('keybody').digest, meta['body_digest'])

    def test_empty_body_marker(self):
        self.__sut.set('key', BytesIO(b''), METADATA).body.close()

        meta = self._meta('key')
        self.assertTrue(meta['empty'])
        self.assertIsNone(meta['body_digest'])
        self.assertIsNone(self.__sut.store.get_info('keybody'), 'No body blob should be stored for an empty body')

    def test_expiration_is_stored(self):
        cache = FileSystemCache(self.__path, ttl=60)
        before = int(time.time() * 1000)
        cache.set('key', BytesIO(b'contents'), METADATA).body.close()

        expiration = self._meta('key')['expiration']
        self.assertGreaterEqual(expiration, before + 60000)
        self.assertLessEqual(expiration, int(time.time() * 1000) + 60000)

    def test_identical_bodies_share_content(self):
        self.__sut.set('one', BytesIO(b'contents'), METADATA).body.close()
        self.__sut.set('two', BytesIO(b'contents'), METADATA).body.close()

        self.assertEqual(self._meta('one')['body_digest'], self._meta('two')['body_digest'])

    def test_missing_body_is_a_miss(self):
        self.__sut.set('key', BytesIO(b'contents'), METADATA).body.close()
        digest = self._meta('key')['body_digest']
        for path in (self.__path / 'content').rglob('*'):
            if path.is_file() and ''.join(path.relative_to(self.__path / 'content').parts) == digest:
                path.unlink()

        self.assertIsNone(self.__sut.get('key'))

    def test_corrupt_metadata_is_a_miss(self):
        self.__sut.store.put('keymeta', b'{"unexpected": true}')

        self.assertIsNone(self.__sut.get('key'))

    def test_storage_failure(self):
        when(self.__sut.store).put_stream(...).thenRaise(PermissionError('denied'))

        with self.assertRaises(StorageFailure) as context:
            self.__sut.set('key', BytesIO(b'contents'), METADATA)
        self.assertIsInstance(context.exception.__cause__, PermissionError)

    def test_prune_after_remove(self):
        self.__sut.set('key', BytesIO(b'contents'), METADATA).body.close()
        self.__sut.remove('key')

        self.assertEqual(2, self.__sut.prune(grace_period=0), 'Both the body and the metadata should be reclaimed')

    def test_prune_keeps_recent_content(self):
        self.__sut.set('key', BytesIO(b'contents'), METADATA).body.close()
        self.__sut.remove('key')

        self.assertEqual(0, self.__sut.prune())
