import fcntl
import itertools
import logging
import os
import shutil
import tempfile
import threading
import time
import unittest

from liotarget.lock import ConfigFSLock, process_lock
from liotarget.state import RestoredFlag
from liotarget.utils import LockTimeoutError

logging.basicConfig()
log = logging.getLogger('TestLock')
log.setLevel(logging.INFO)


class TestConfigFSLock(unittest.TestCase):

    def setUp(self):
        log.info(self._testMethodName)
        self.dir = tempfile.mkdtemp()
        self.path = os.path.join(self.dir, 'run', 'configfs.lock')
        self.sleeps = []

    def tearDown(self):
        shutil.rmtree(self.dir)

    def make_lock(self, timeout=1):
        ticks = itertools.count(step=0.25)
        return ConfigFSLock(self.path, timeout=timeout,
                            sleep=self.sleeps.append, clock=lambda: next(ticks))

    def test_reentrant(self):
        lock = self.make_lock()
        with lock.held():
            with lock.held():
                self.assertTrue(lock.is_held)
            self.assertTrue(lock.is_held)
        self.assertFalse(lock.is_held)
        self.assertTrue(os.path.exists(self.path))

    def test_released_on_error(self):
        lock = self.make_lock()
        with self.assertRaises(ValueError):
            with lock.held():
                raise ValueError()
        self.assertFalse(lock.is_held)

    def test_timeout(self):
        os.makedirs(os.path.dirname(self.path))
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            lock = self.make_lock()
            self.assertRaises(LockTimeoutError, lock.acquire)
            self.assertFalse(lock.is_held)
            self.assertTrue(self.sleeps)
            self.assertTrue(all(0 < s < 0.01 for s in self.sleeps))

            fcntl.flock(fd, fcntl.LOCK_UN)
            with lock.held():
                self.assertTrue(lock.is_held)
        finally:
            os.close(fd)

    def test_other_thread_waits(self):
        lock = self.make_lock()
        errors = []

        def contend():
            try:
                lock.acquire(timeout=0.05)
            except LockTimeoutError as e:
                errors.append(e)

        with lock.held():
            thread = threading.Thread(target=contend)
            thread.start()
            thread.join()
        self.assertEqual(len(errors), 1)

    def test_timeout_covers_thread_wait(self):
        os.makedirs(os.path.dirname(self.path))
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        lock = ConfigFSLock(self.path, timeout=0.3)
        holding = threading.Event()

        def hold_thread_lock():
            with lock._thread_lock:
                holding.set()
                time.sleep(0.2)

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            thread = threading.Thread(target=hold_thread_lock)
            thread.start()
            holding.wait()
            start = time.monotonic()
            self.assertRaises(LockTimeoutError, lock.acquire)
            elapsed = time.monotonic() - start
            thread.join()
        finally:
            os.close(fd)
        self.assertLess(elapsed, 0.45)
        self.assertFalse(lock.is_held)

    def test_process_lock(self):
        self.assertIs(process_lock(self.path), process_lock(self.path))
        self.assertIsNot(process_lock(self.path), process_lock(self.path + '2'))


class TestRestoredFlag(unittest.TestCase):

    def setUp(self):
        log.info(self._testMethodName)
        self.dir = tempfile.mkdtemp()
        self.flag = RestoredFlag(os.path.join(self.dir, 'shm', 'restored'),
                                 clock=lambda: 1700000000.5)

    def tearDown(self):
        shutil.rmtree(self.dir)

    def test_flag(self):
        self.assertFalse(self.flag.is_set())
        self.assertIsNone(self.flag.timestamp())
        self.flag.set()
        self.assertTrue(self.flag.is_set())
        self.assertEqual(self.flag.timestamp(), 1700000000)
        self.flag.clear()
        self.assertFalse(self.flag.is_set())
        self.flag.clear()

if __name__ == '__main__':
    unittest.main()
