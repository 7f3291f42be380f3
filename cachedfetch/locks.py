import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


logger = logging.getLogger(__name__)


class _KeyLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0
        self.owner = None  # type: Optional[int]


class KeyedLock:
    """
    Mutual exclusion per key.

    Only one thread holds the lock for a given key at a time, and locks for different keys never contend. The lock for
    a key exists only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self.__guard = threading.Lock()
        self.__locks = {}  # type: Dict[str, _KeyLock]

    def lock(self, key: str) -> None:
        """
        Block until the lock for `key` is acquired by the calling thread.
        """
        with self.__guard:
            entry = self.__locks.get(key)
            if entry is None:
                entry = self.__locks[key] = _KeyLock()
            entry.users += 1
        entry.lock.acquire()
        entry.owner = threading.get_ident()

    def unlock(self, key: str) -> None:
        """
        Release the lock for `key`. Does nothing unless the calling thread holds it.
        """
        with self.__guard:
            entry = self.__locks.get(key)
            if entry is None or entry.owner != threading.get_ident():
                logger.debug('Ignoring unlock of {}, which this thread does not hold'.format(key))
                return
            entry.owner = None
            entry.users -= 1
            if entry.users == 0:
                del self.__locks[key]
            entry.lock.release()

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        self.lock(key)
        try:
            yield
        finally:
            self.unlock(key)

    def __len__(self) -> int:
        with self.__guard:
            return len(self.__locks)
