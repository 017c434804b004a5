"""
Run locks for the cleanup jobs.

A run lock is a single-flight guard: ``acquire()`` never blocks, and a job
that fails to acquire simply skips its run. The in-process lock covers a
single deployment; the Redis lease covers several instances sharing a bucket.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('pexpire', KEYS[1], ARGV[2])
else
  return 0
end
"""


class RunLock(Protocol):
    """Non-blocking mutual exclusion for one job type."""

    def acquire(self) -> bool:
        ...

    def release(self) -> None:
        ...

    def locked(self) -> bool:
        ...


@contextmanager
def hold(lock: RunLock) -> Iterator[bool]:
    """
    Try to take ``lock`` for the duration of the block.

    Yields whether it was acquired; releases on every exit path when it was.
    """
    acquired = lock.acquire()
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()


class InProcessRunLock:
    """Run lock backed by a ``threading.Lock``."""

    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


@dataclass
class RedisRunLock:
    """
    Lease stored in Redis with ``SET key token NX EX ttl``.

    While held, a background thread extends the lease every
    ``renew_interval_seconds`` (a third of the TTL by default), so a run of
    any length keeps it. The TTL only bounds how long a crashed holder can
    block other instances. Extend and release only touch the key while it
    still holds our token.
    """

    url: Optional[str] = None
    key: str = "storefront:media-cleanup:lock"
    ttl_seconds: float = 3600
    client: Optional[redis.Redis] = None
    renew_interval_seconds: Optional[float] = None
    _token: Optional[str] = field(default=None, init=False, repr=False)
    _stop_renewal: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _renewer: Optional[threading.Thread] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        if self.client is None:
            if not self.url:
                raise ValueError("RedisRunLock needs a url or a client")
            self.client = redis.Redis.from_url(self.url)
        if self.renew_interval_seconds is None:
            self.renew_interval_seconds = self.ttl_seconds / 3

    @property
    def _ttl_ms(self) -> int:
        return int(self.ttl_seconds * 1000)

    def _new_token(self) -> str:
        return f"{os.getpid()}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"

    def acquire(self) -> bool:
        token = self._new_token()
        try:
            acquired = self.client.set(self.key, token, nx=True, px=self._ttl_ms)
        except redis_exceptions.RedisError:
            # Without the lease we cannot rule out a concurrent run elsewhere.
            logger.exception("Failed to acquire run lock %s", self.key)
            return False
        if not acquired:
            return False
        self._token = token
        self._start_renewal()
        return True

    def extend(self) -> bool:
        """Push the lease expiry out by another TTL; False once the lease is lost."""
        token = self._token
        if token is None:
            return False
        try:
            return bool(self.client.eval(_EXTEND_SCRIPT, 1, self.key, token, self._ttl_ms))
        except redis_exceptions.RedisError:
            logger.exception("Failed to extend run lock %s", self.key)
            return False

    def _start_renewal(self) -> None:
        self._stop_renewal = threading.Event()
        self._renewer = threading.Thread(
            target=self._renew_loop,
            args=(self._stop_renewal,),
            name=f"lease-renewal:{self.key}",
            daemon=True,
        )
        self._renewer.start()

    def _renew_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.renew_interval_seconds):
            if not self.extend():
                logger.error("Lost run lock %s while the run was still in progress", self.key)
                return

    def _stop_renewal_thread(self) -> None:
        self._stop_renewal.set()
        renewer, self._renewer = self._renewer, None
        if renewer and renewer is not threading.current_thread():
            renewer.join(timeout=5)

    def release(self) -> None:
        self._stop_renewal_thread()
        token, self._token = self._token, None
        if token is None:
            return
        try:
            self.client.eval(_RELEASE_SCRIPT, 1, self.key, token)
        except redis_exceptions.RedisError:
            # The lease still expires after ttl_seconds.
            logger.exception("Failed to release run lock %s", self.key)

    def locked(self) -> bool:
        try:
            return bool(self.client.exists(self.key))
        except redis_exceptions.RedisError:
            logger.exception("Failed to read run lock %s", self.key)
            return False
