"""Mutual-exclusion token for tasks that touch server or world directories."""

from contextlib import contextmanager
import fcntl
import os
import threading
import time


class TaskToken:
    """One in-process lock plus an ``flock`` file so CLI runs in other processes honour it."""

    def __init__(self, lock_file=None, poll_interval=0.2, clock=time.monotonic):
        self.lock_file = lock_file
        self.poll_interval = poll_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._fd = None
        self._holder = ""

    @property
    def holder(self):
        return self._holder

    def _try_file_lock(self):
        """Take the file lock without blocking; True when held."""
        if self.lock_file is None:
            return True
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        except OSError:
            os.close(fd)
            raise
        self._fd = fd
        return True

    def acquire(self, holder, timeout=0.0, cancel_event=None):
        """Acquire within ``timeout`` seconds; gives up early on cancellation."""
        deadline = self._clock() + max(0.0, float(timeout))
        while True:
            if self._lock.acquire(blocking=False):
                try:
                    got_file = self._try_file_lock()
                except OSError:
                    self._lock.release()
                    raise
                if got_file:
                    self._holder = holder
                    return True
                self._lock.release()
            if cancel_event is not None and cancel_event.is_set():
                return False
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            pause = min(self.poll_interval, remaining)
            if cancel_event is not None:
                cancel_event.wait(pause)
            else:
                time.sleep(pause)

    def release(self):
        self._holder = ""
        if self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None
        self._lock.release()

    @contextmanager
    def held(self, holder, timeout=0.0, cancel_event=None):
        """Context manager yielding whether the token was acquired."""
        acquired = self.acquire(holder, timeout=timeout, cancel_event=cancel_event)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
