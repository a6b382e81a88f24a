"""
SSO Session Pool

Keeps browser-authenticated warehouse sessions alive across requests,
keyed by datasource id. Each slot holds either a live connection or the
single in-flight connect attempt, so concurrent callers for the same
datasource share one browser login.

Lifecycle of a slot:
    absent -> connecting -> live -> (reused | terminated -> absent)

Operations run through `run()`:
    - terminated sessions are evicted and the operation retried on a
      fresh session, up to `max_attempts` attempts in total
    - expired identity provider sessions are not retried; the local token
      cache is removed and ReauthenticationRequiredError is raised
    - every attempt has an outer timeout; on timeout the session is torn
      down and QueryTimeoutError is raised
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

from tinypivot_api.core.errors import (
    ConnectionTerminatedError,
    QueryTimeoutError,
    ReauthenticationRequiredError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TOKEN_CACHE_PATH = Path.home() / ".cache" / "snowflake" / "credential_cache_v1.json"


class SessionDriver(Protocol):
    """What the pool needs from a connector to manage its sessions."""

    async def open_session(self) -> Any: ...

    def session_is_up(self, connection: Any) -> bool: ...

    async def close_session(self, connection: Any) -> None: ...


@dataclass
class PooledSession:
    """Pool slot: a live connection or a pending connect."""
    driver: SessionDriver
    connection: Any | None = None
    connecting: asyncio.Future | None = None


class SSOSessionPool:
    """Owned pool of SSO sessions. Create one per application."""

    def __init__(
        self,
        max_attempts: int = 3,
        retry_backoff: float = 1.0,
        connect_timeout: float = 120.0,
        query_timeout: float = 60.0,
        token_cache_path: str | Path | None = None,
    ):
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.connect_timeout = connect_timeout
        self.query_timeout = query_timeout
        self.token_cache_path = Path(token_cache_path) if token_cache_path else DEFAULT_TOKEN_CACHE_PATH
        self._sessions: dict[str, PooledSession] = {}
        self._closing: set[asyncio.Task] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def has_live_session(self, key: str) -> bool:
        session = self._sessions.get(key)
        return bool(session and session.connection is not None)

    # ========================================================================
    # Acquire / release
    # ========================================================================

    async def acquire(self, key: str, driver: SessionDriver) -> Any:
        """
        Return a live connection for key, connecting if needed.

        Concurrent callers for the same key await the same connect attempt.
        """
        session = self._sessions.get(key)

        if session is not None and session.connection is not None:
            if driver.session_is_up(session.connection):
                return session.connection
            logger.info(f"Pooled SSO session for {key} is down, reconnecting")
            await self.evict(key)
            session = None

        if session is not None and session.connecting is not None:
            return await asyncio.shield(session.connecting)

        session = PooledSession(driver=driver)
        self._sessions[key] = session
        task = asyncio.ensure_future(driver.open_session())
        session.connecting = task
        task.add_done_callback(lambda done: self._on_connect_done(key, session, done))
        logger.info(f"Opening SSO session for {key}")
        return await asyncio.shield(task)

    def _on_connect_done(self, key: str, session: PooledSession, task: asyncio.Future) -> None:
        failed = task.cancelled() or task.exception() is not None
        current = self._sessions.get(key) is session

        if failed:
            if current:
                del self._sessions[key]
            return

        if not current:
            # Evicted while connecting
            closing = asyncio.ensure_future(self._close_session(key, session.driver, task.result()))
            self._closing.add(closing)
            closing.add_done_callback(self._closing.discard)
            return

        session.connection = task.result()
        session.connecting = None

    async def evict(self, key: str) -> None:
        """Drop the slot for key and close its connection if it has one."""
        session = self._sessions.pop(key, None)
        if session is None or session.connection is None:
            return
        await self._close_session(key, session.driver, session.connection)

    @staticmethod
    async def _close_session(key: str, driver: SessionDriver, connection: Any) -> None:
        try:
            await driver.close_session(connection)
        except Exception as e:
            logger.warning(f"Error closing SSO session for {key}: {e}")

    async def close_all(self) -> None:
        """Close every pooled session."""
        for key in list(self._sessions):
            await self.evict(key)

    # ========================================================================
    # Retrying execution
    # ========================================================================

    async def run(
        self,
        key: str,
        driver: SessionDriver,
        operation: Callable[[Any], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """
        Run an operation against the pooled session for key.

        Args:
            key: Datasource id
            driver: Connector able to open and close sessions
            operation: Coroutine function receiving the live connection
            timeout: Outer timeout per attempt (defaults to connect_timeout)

        Raises:
            ConnectionTerminatedError: After max_attempts terminated sessions
            ReauthenticationRequiredError: When the user must log in again
            QueryTimeoutError: When an attempt exceeds the timeout
        """
        timeout = self.connect_timeout if timeout is None else timeout
        last_error: ConnectionTerminatedError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(self._attempt(key, driver, operation), timeout)
            except asyncio.TimeoutError as e:
                logger.warning(f"SSO operation for {key} timed out after {timeout:g}s")
                await self.evict(key)
                raise QueryTimeoutError(f"Operation timed out after {timeout:g} seconds") from e
            except ReauthenticationRequiredError:
                logger.warning(f"SSO session for {key} expired, re-authentication required")
                await self.evict(key)
                self.clear_token_cache()
                raise
            except ConnectionTerminatedError as e:
                last_error = e
                logger.warning(
                    f"SSO session for {key} terminated (attempt {attempt}/{self.max_attempts}): {e}"
                )
                await self.evict(key)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_backoff)

        raise ConnectionTerminatedError(
            f"Connection terminated after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    async def _attempt(
        self,
        key: str,
        driver: SessionDriver,
        operation: Callable[[Any], Awaitable[T]],
    ) -> T:
        connection = await self.acquire(key, driver)
        return await operation(connection)

    def clear_token_cache(self) -> None:
        """Delete the driver's local credential cache so the next login prompts again."""
        try:
            self.token_cache_path.unlink(missing_ok=True)
            logger.info(f"Cleared SSO token cache at {self.token_cache_path}")
        except OSError as e:
            logger.warning(f"Could not clear SSO token cache {self.token_cache_path}: {e}")
