'''
Implements the cross-process lock serialising configfs mutations.

This file is part of liotarget.

Licensed under the Apache License, Version 2.0 (the "License"); you may
not use this file except in compliance with the License. You may obtain
a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the
License for the specific language governing permissions and limitations
under the License.
'''

import errno
import fcntl
import logging
import os
import random
import threading
import time
from contextlib import contextmanager

from .utils import LockTimeoutError

log = logging.getLogger(__name__)

lock_file = '/var/run/liotarget_configfs.lock'
lock_wait_timeout = 60

_locks = {}
_locks_guard = threading.Lock()


class ConfigFSLock:
    '''
    An exclusive flock(2) on a lock file, shared by every process that
    reads-then-mutates configfs or rewrites the saved configuration.

    Acquisition is re-entrant within a process: nested held() blocks only
    take the flock once and release it when the outermost block exits.

    >>> lock = ConfigFSLock('/tmp/test.lock')
    >>> with lock.held():
    ...     lock.is_held
    True
    >>> lock.is_held
    False
    '''

    def __init__(self, path=lock_file, timeout=lock_wait_timeout,
                 sleep=time.sleep, clock=time.monotonic):
        self._path = path
        self._timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._fd = None
        self._depth = 0
        self._thread_lock = threading.RLock()

    def __repr__(self):
        return f"<ConfigFSLock {self._path}>"

    def _open(self):
        if self._fd is None:
            directory = os.path.dirname(self._path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o600)
        return self._fd

    def _try_flock(self):
        try:
            fcntl.flock(self._open(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            if e.errno in (errno.EAGAIN, errno.EACCES):
                return False
            raise
        return True

    def acquire(self, timeout=None):
        '''
        Waits up to timeout seconds for the lock.
        @raises: LockTimeoutError when it cannot be obtained in time.
        '''
        if timeout is None:
            timeout = self._timeout
        # one deadline covers both the thread wait and the flock polling
        deadline = self._clock() + timeout
        if not self._thread_lock.acquire(timeout=timeout):
            raise LockTimeoutError(
                f"Could not acquire exclusive {self._path} lock within {timeout} seconds")

        if self._depth > 0:
            self._depth += 1
            return

        try:
            while not self._try_flock():
                if self._clock() >= deadline:
                    raise LockTimeoutError(
                        f"Could not acquire exclusive {self._path} lock within {timeout} seconds")
                self._sleep(random.uniform(0.0001, 0.005))
        except BaseException:
            self._thread_lock.release()
            raise
        self._depth = 1

    def release(self):
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        self._thread_lock.release()

    @contextmanager
    def held(self, timeout=None):
        self.acquire(timeout)
        try:
            yield self
        finally:
            self.release()

    def _get_path(self):
        return self._path

    def _get_is_held(self):
        return self._depth > 0

    path = property(_get_path, doc="Get the lock file path.")
    is_held = property(_get_is_held,
            doc="True while this process holds the lock.")


def process_lock(path=lock_file, timeout=lock_wait_timeout):
    '''
    Returns the one ConfigFSLock this process uses for path.
    '''
    with _locks_guard:
        lock = _locks.get(path)
        if lock is None:
            lock = _locks[path] = ConfigFSLock(path, timeout)
        return lock
