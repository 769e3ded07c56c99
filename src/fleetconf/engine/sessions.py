"""Per-host session pooling with connection retry."""

import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from fleetconf.config.defaults import DEFAULT_CONNECT_RETRIES, DEFAULT_RETRY_DELAY
from fleetconf.engine.inventory import Host
from fleetconf.errors import AuthenticationFailed, ConnectionFailed, ConnectionTimeout
from fleetconf.telemetry.logger import get_logger
from fleetconf.transport.session import RemoteSession, SessionFactory

logger = get_logger(__name__)


class SessionPool:
    """Holds at most one live session per host.

    A lease takes the host's lock, so two units targeting the same host run
    one after the other and never interleave commands on one session.

    Example:
        pool = SessionPool(factory)
        with pool.lease(host) as session:
            session.run("hostname")
        pool.close_all()
    """

    def __init__(
        self,
        factory: SessionFactory,
        connect_retries: int = DEFAULT_CONNECT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        keep_warm: bool = True,
    ) -> None:
        """Initialize the pool.

        Args:
            factory: Opens a session for a host name and its params
            connect_retries: Connection attempts before giving up
            retry_delay: Base delay between attempts, grows linearly
            keep_warm: Keep sessions open between leases
        """
        self.factory = factory
        self.connect_retries = max(1, connect_retries)
        self.retry_delay = retry_delay
        self.keep_warm = keep_warm
        self._sessions: dict[str, RemoteSession] = {}
        self._host_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    @contextmanager
    def lease(
        self,
        host: Host,
        abandoned: Optional[threading.Event] = None,
    ) -> Iterator[RemoteSession]:
        """Borrow the session for ``host``, opening it on first use.

        Args:
            host: Host to lease a session for
            abandoned: Set by the caller once it stops waiting for this
                lease; a session opened after that is closed, not pooled

        Raises:
            AuthenticationFailed: If the host rejects the credentials
            ConnectionFailed: If every connection attempt fails
            ConnectionTimeout: If the last attempt timed out, or the lease
                was abandoned
        """
        with self._host_lock(host.name):
            _check_abandoned(host.name, abandoned)
            session = self._acquire(host, abandoned)
            try:
                yield session
            finally:
                self._release(host.name, session)

    def abort(self, name: str) -> None:
        """Interrupt and drop the session of a host whose unit overran."""
        with self._lock:
            session = self._sessions.pop(name, None)
        if session is not None:
            logger.debug("Aborting session", host=name)
            session.abort()

    def close_host(self, name: str) -> None:
        with self._lock:
            session = self._sessions.pop(name, None)
        if session is not None:
            session.close()

    def close_all(self) -> None:
        """Close all sessions in the pool."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
        logger.debug("Session pool closed", sessions=len(sessions))

    def active_hosts(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def _host_lock(self, name: str) -> threading.Lock:
        with self._lock:
            return self._host_locks.setdefault(name, threading.Lock())

    def _acquire(self, host: Host, abandoned: Optional[threading.Event] = None) -> RemoteSession:
        with self._lock:
            session = self._sessions.get(host.name)
        if session is not None:
            if session.is_active:
                return session
            logger.debug("Dropping stale session", host=host.name)
            self.close_host(host.name)

        session = self._connect(host)
        if abandoned is not None and abandoned.is_set():
            session.close()
            logger.debug("Discarding session opened after abandon", host=host.name)
            _check_abandoned(host.name, abandoned)
        with self._lock:
            self._sessions[host.name] = session
        return session

    def _release(self, name: str, session: RemoteSession) -> None:
        with self._lock:
            pooled = self._sessions.get(name) is session
            keep = pooled and self.keep_warm and session.is_active
            if pooled and not keep:
                del self._sessions[name]
        if not keep:
            session.close()

    def _connect(self, host: Host) -> RemoteSession:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.connect_retries + 1):
            try:
                session = self.factory(host.name, host.params)
                logger.debug("Session opened", host=host.name, attempt=attempt)
                return session
            except AuthenticationFailed:
                raise
            except (ConnectionFailed, ConnectionTimeout) as e:
                last_error = e
                logger.warning(
                    "Connection attempt failed",
                    host=host.name,
                    attempt=attempt,
                    max_attempts=self.connect_retries,
                    error=str(e),
                )
                if attempt < self.connect_retries:
                    time.sleep(self.retry_delay * attempt)

        assert last_error is not None
        raise last_error


def _check_abandoned(name: str, abandoned: Optional[threading.Event]) -> None:
    if abandoned is not None and abandoned.is_set():
        raise ConnectionTimeout(f"Gave up on {name} before it was reached")
