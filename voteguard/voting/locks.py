# voteguard/voting/locks.py

import threading
from contextlib import contextmanager


class KeyedLocks:
    """
    One reentrant mutex per key, created on demand and dropped when no thread
    holds or waits on it. Serializes work for a single (voter, election)
    without making different voters contend with each other. A thread already
    holding a key may take it again, so VoteRecorder and SecretCodeManager can
    share one instance. Across processes the row updates in the vote and code
    transactions do the serializing.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)
