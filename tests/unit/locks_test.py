import threading
import time
from unittest import TestCase

from cachedfetch.locks import KeyedLock


class TestKeyedLock(TestCase):
    def setUp(self):
        self.__sut = KeyedLock()

    def test_same_key_is_exclusive(self):
        active = []
        overlaps = []
        guard = threading.Lock()

        def work():
            with self.__sut.locked('key'):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(len(active))
                time.sleep(0.01)
                with guard:
                    active.pop()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual([], overlaps, 'No two threads should hold the same key at once')
        self.assertEqual(0, len(self.__sut), 'Uncontended locks should be discarded')

    def test_different_keys_do_not_contend(self):
        acquired = threading.Event()

        def other():
            with self.__sut.locked('other'):
                acquired.set()

        with self.__sut.locked('key'):
            thread = threading.Thread(target=other)
            thread.start()
            self.assertTrue(acquired.wait(5), 'A different key should be acquired while the first is held')
            thread.join()

    def test_waiter_acquires_after_release(self):
        acquired = threading.Event()

        def waiter():
            with self.__sut.locked('key'):
                acquired.set()

        self.__sut.lock('key')
        thread = threading.Thread(target=waiter)
        thread.start()
        self.assertFalse(acquired.wait(0.1), 'The waiter should block while the key is held')

        self.__sut.unlock('key')
        self.assertTrue(acquired.wait(5))
        thread.join()

    def test_unlock_is_idempotent(self):
        self.__sut.lock('key')
        self.__sut.unlock('key')
        self.__sut.unlock('key')
        self.__sut.unlock('never-locked')

        self.__sut.lock('key')
        self.__sut.unlock('key')

    def test_unlock_by_other_thread_is_ignored(self):
        self.__sut.lock('key')
        thread = threading.Thread(target=self.__sut.unlock, args=('key',))
        thread.start()
        thread.join()

        self.assertEqual(1, len(self.__sut), 'The key should still be held')
        self.__sut.unlock('key')
        self.assertEqual(0, len(self.__sut))
