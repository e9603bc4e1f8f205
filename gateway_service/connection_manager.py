"""
Connection lifecycle: one shared MongoClient per process.

State machine::

    disconnected ──connect()──▶ connecting ──ok──▶ connected
          ▲                         │
          │                         └─retries exhausted─▶ error
          └──────────── disconnect() ◀──────────────────────┘

Only one dial sequence runs at a time. A caller that finds the state
``connecting`` waits on a condition variable and is woken when the owner
publishes the outcome; it never starts a second attempt. ``disconnect()``
cancels an in-flight sequence (the backoff wait is interruptible) and
wakes every waiter.
"""

import threading
from typing import Any, Callable, Optional

from pymongo import MongoClient
from pymongo.database import Database

from config import RetryPolicy, ServerConfig
from errors import DatabaseConnectionError, NotConnectedError
from logger import logger

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_ERROR = "error"

DEFAULT_DATABASE_NAME = "test"
ADMIN_DATABASE_NAME = "admin"


def extract_database_name(uri: str) -> str:
    """Database named in the URI path, or ``test``.

    ``mongodb://host:27017/shop?retryWrites=true`` → ``shop``.
    No path, an empty path, or ``admin`` fall back to the default.
    """
    rest = uri.split("://", 1)[-1]
    path = rest.split("?", 1)[0]
    if "/" not in path:
        return DEFAULT_DATABASE_NAME
    name = path.rsplit("/", 1)[-1]
    if not name or name == ADMIN_DATABASE_NAME:
        return DEFAULT_DATABASE_NAME
    return name


def _close_quietly(client: Any) -> None:
    """Close failures must never hide the error that led here."""
    try:
        client.close()
    except Exception as e:
        logger.debug("Ignoring error while closing MongoClient: %s", e)


class ConnectionManager:
    """Owns the single shared client handle and its state."""

    def __init__(
        self,
        client_factory: Callable[..., Any] = MongoClient,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Optional[Any] = None
        self._db: Optional[Database] = None
        self._state = STATE_DISCONNECTED
        self._retry_policy = RetryPolicy()
        self._cond = threading.Condition()
        self._cancelled = threading.Event()
        self._generation = 0

    # ---------------------- CONFIG ----------------------

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def set_retry_policy(self, policy: Optional[RetryPolicy] = None, **overrides) -> None:
        """Replace the policy; keyword overrides apply on top of the defaults."""
        base = policy if policy is not None else RetryPolicy()
        self._retry_policy = base.model_copy(update=overrides) if overrides else base

    # ---------------------- STATE ----------------------

    def current_state(self) -> str:
        return self._state

    def is_connected(self) -> bool:
        return self._state == STATE_CONNECTED and self._db is not None

    def get_handle(self) -> Database:
        with self._cond:
            if self._db is None or self._state != STATE_CONNECTED:
                raise NotConnectedError()
            return self._db

    def get_client(self) -> Any:
        with self._cond:
            if self._client is None or self._state != STATE_CONNECTED:
                raise NotConnectedError()
            return self._client

    # ---------------------- CONNECT ----------------------

    def connect(self, config: ServerConfig, wait_timeout: Optional[float] = None) -> Database:
        """Return the shared database handle, dialing if necessary.

        Raises ``DatabaseConnectionError`` when every attempt fails, when
        the attempt this caller waited on failed, or when the sequence was
        cancelled by ``disconnect()``.
        """
        with self._cond:
            if self._state == STATE_CONNECTED and self._db is not None:
                return self._db
            if self._state == STATE_CONNECTING:
                return self._wait_for_inflight(wait_timeout)
            self._state = STATE_CONNECTING
            self._cancelled.clear()
            self._generation += 1
            generation = self._generation

        try:
            client, db = self._dial(config)
        except DatabaseConnectionError:
            with self._cond:
                # disconnect() may already have reset the state
                if generation == self._generation and self._state == STATE_CONNECTING:
                    self._state = STATE_ERROR
                    self._client = None
                    self._db = None
                self._cond.notify_all()
            raise

        with self._cond:
            if self._cancelled.is_set() or generation != self._generation:
                _close_quietly(client)
                self._cond.notify_all()
                raise DatabaseConnectionError("Connection attempt cancelled")
            self._client = client
            self._db = db
            self._state = STATE_CONNECTED
            self._cond.notify_all()

        logger.info("Connected to MongoDB database '%s'", db.name)
        return db

    def _wait_for_inflight(self, wait_timeout: Optional[float]) -> Database:
        """Block (condition held) until the in-flight attempt resolves."""
        logger.debug("Connection attempt already in flight, waiting for it")
        finished = self._cond.wait_for(
            lambda: self._state != STATE_CONNECTING, timeout=wait_timeout,
        )
        if not finished:
            raise DatabaseConnectionError("Timed out waiting for in-flight connection")
        if self._state == STATE_CONNECTED and self._db is not None:
            return self._db
        raise DatabaseConnectionError("Connection failed")

    def _dial(self, config: ServerConfig):
        policy = self._retry_policy
        db_name = extract_database_name(config.mongodb_uri)
        last_error: Optional[BaseException] = None

        for attempt in range(policy.total_attempts):
            if self._cancelled.is_set():
                raise DatabaseConnectionError("Connection attempt cancelled")

            client = None
            try:
                client = self._client_factory(
                    config.mongodb_uri,
                    serverSelectionTimeoutMS=config.mongodb_timeout,
                    connectTimeoutMS=config.mongodb_timeout,
                    socketTimeoutMS=config.mongodb_timeout,
                    maxPoolSize=config.mongodb_max_pool_size,
                    minPoolSize=config.mongodb_min_pool_size,
                    maxIdleTimeMS=config.mongodb_max_idle_time_ms,
                    waitQueueTimeoutMS=config.mongodb_wait_queue_timeout_ms,
                )
                client.admin.command("ping")  # force a round trip
                return client, client[db_name]
            except Exception as e:
                last_error = e
                if client is not None:
                    _close_quietly(client)
                logger.warning(
                    "MongoDB connection attempt %d/%d failed: %s",
                    attempt + 1, policy.total_attempts, e,
                )

            if attempt < policy.max_retries:
                delay_ms = policy.delay_ms(attempt)
                logger.info("Retrying MongoDB connection in %.0f ms", delay_ms)
                if self._wait_backoff(delay_ms / 1000.0):
                    raise DatabaseConnectionError(
                        "Connection attempt cancelled",
                        attempts=attempt + 1,
                        last_error=last_error,
                    )

        attempts = policy.total_attempts
        logger.error("Giving up on MongoDB after %d attempts: %s", attempts, last_error)
        raise DatabaseConnectionError(
            f"Failed to connect to MongoDB after {attempts} attempts: {last_error}",
            attempts=attempts,
            last_error=last_error,
        )

    def _wait_backoff(self, seconds: float) -> bool:
        """Sleep between attempts; True when cancelled meanwhile."""
        if self._sleep is not None:
            self._sleep(seconds)
            return self._cancelled.is_set()
        return self._cancelled.wait(seconds)

    # ---------------------- DISCONNECT ----------------------

    def disconnect(self) -> None:
        """Close the handle (best effort) and reset to ``disconnected``."""
        with self._cond:
            self._cancelled.set()
            client = self._client
            self._client = None
            self._db = None
            self._state = STATE_DISCONNECTED
            self._cond.notify_all()
        if client is not None:
            _close_quietly(client)
            logger.info("Disconnected from MongoDB")


connection_manager = ConnectionManager()
