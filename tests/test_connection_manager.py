"""
Tests for the connection lifecycle: retry/backoff, coalescing, teardown.
"""

import threading
import time

import pytest

from config import RetryPolicy
from connection_manager import (
    STATE_CONNECTED,
    STATE_DISCONNECTED,
    STATE_ERROR,
    ConnectionManager,
    extract_database_name,
)
from errors import DatabaseConnectionError, NotConnectedError
from conftest import ClientFactory


def _manager(factory, sleeps=None, **policy):
    recorder = sleeps if sleeps is not None else []
    manager = ConnectionManager(client_factory=factory, sleep=recorder.append)
    if policy:
        manager.set_retry_policy(**policy)
    return manager


class TestRetryPolicy:
    def test_delay_grows_geometrically(self):
        policy = RetryPolicy(initial_delay_ms=100, backoff_multiplier=3, max_delay_ms=10_000)
        assert [policy.delay_ms(i) for i in range(4)] == [100, 300, 900, 2700]

    def test_delay_is_capped(self):
        policy = RetryPolicy(initial_delay_ms=1000, backoff_multiplier=2, max_delay_ms=3000)
        assert [policy.delay_ms(i) for i in range(5)] == [1000, 2000, 3000, 3000, 3000]

    def test_total_attempts(self):
        assert RetryPolicy(max_retries=0).total_attempts == 1
        assert RetryPolicy(max_retries=4).total_attempts == 5


class TestConnect:
    def test_connects_and_returns_named_database(self, server_config):
        factory = ClientFactory()
        manager = _manager(factory)

        db = manager.connect(server_config)

        assert db.name == "shop"
        assert manager.current_state() == STATE_CONNECTED
        assert manager.is_connected()
        assert manager.get_handle() is db
        assert manager.get_client() is factory.clients[0]

    def test_every_timeout_uses_configured_value(self, server_config):
        factory = ClientFactory()
        _manager(factory).connect(server_config)

        kwargs = factory.clients[0].kwargs
        assert kwargs["serverSelectionTimeoutMS"] == 1500
        assert kwargs["connectTimeoutMS"] == 1500
        assert kwargs["socketTimeoutMS"] == 1500

    def test_connect_is_idempotent(self, server_config):
        factory = ClientFactory()
        manager = _manager(factory)

        first = manager.connect(server_config)
        second = manager.connect(server_config)

        assert first is second
        assert len(factory.clients) == 1

    @pytest.mark.parametrize("max_retries", [0, 1, 3, 5])
    def test_permanent_failure_makes_max_retries_plus_one_attempts(self, server_config, max_retries):
        factory = ClientFactory(outcomes=[True])
        sleeps = []
        manager = _manager(factory, sleeps, max_retries=max_retries)

        with pytest.raises(DatabaseConnectionError) as exc_info:
            manager.connect(server_config)

        assert len(factory.clients) == max_retries + 1
        assert len(sleeps) == max_retries
        assert exc_info.value.attempts == max_retries + 1
        assert f"after {max_retries + 1} attempts" in str(exc_info.value)
        assert "no servers found" in str(exc_info.value)

    def test_backoff_delays_between_attempts(self, server_config):
        factory = ClientFactory(outcomes=[True])
        sleeps = []
        manager = _manager(
            factory, sleeps,
            max_retries=4, initial_delay_ms=500, backoff_multiplier=2, max_delay_ms=3000,
        )

        with pytest.raises(DatabaseConnectionError):
            manager.connect(server_config)

        assert sleeps == [0.5, 1.0, 2.0, 3.0]

    def test_failure_leaves_error_state_and_no_handle(self, server_config):
        manager = _manager(ClientFactory(outcomes=[True]), max_retries=1)

        with pytest.raises(DatabaseConnectionError):
            manager.connect(server_config)

        assert manager.current_state() == STATE_ERROR
        with pytest.raises(NotConnectedError):
            manager.get_handle()

    def test_failed_clients_are_closed(self, server_config):
        factory = ClientFactory(outcomes=[True])
        manager = _manager(factory, max_retries=2)

        with pytest.raises(DatabaseConnectionError):
            manager.connect(server_config)

        assert all(c.closed for c in factory.clients)

    def test_close_errors_do_not_hide_connection_error(self, server_config):
        factory = ClientFactory(outcomes=[True], close_error=True)
        manager = _manager(factory, max_retries=1)

        with pytest.raises(DatabaseConnectionError) as exc_info:
            manager.connect(server_config)

        assert "no servers found" in str(exc_info.value.last_error)

    def test_recovers_after_transient_failures(self, server_config):
        factory = ClientFactory(outcomes=[True, True, False])
        sleeps = []
        manager = _manager(factory, sleeps)

        db = manager.connect(server_config)

        assert db.name == "shop"
        assert len(factory.clients) == 3
        assert sleeps == [1.0, 2.0]
        assert factory.clients[0].closed and factory.clients[1].closed
        assert not factory.clients[2].closed

    def test_can_reconnect_after_error(self, server_config):
        factory = ClientFactory(outcomes=[True, False])
        manager = _manager(factory, max_retries=0)

        with pytest.raises(DatabaseConnectionError):
            manager.connect(server_config)
        db = manager.connect(server_config)

        assert manager.current_state() == STATE_CONNECTED
        assert db is manager.get_handle()


class TestConcurrentConnect:
    def test_concurrent_callers_share_one_dial(self, server_config):
        started, release = threading.Event(), threading.Event()
        factory = ClientFactory(ping_started=started, ping_release=release)
        manager = _manager(factory)
        results, errors = [], []

        def run():
            try:
                results.append(manager.connect(server_config, wait_timeout=5))
            except Exception as e:
                errors.append(e)

        owner = threading.Thread(target=run)
        owner.start()
        assert started.wait(5)

        waiters = [threading.Thread(target=run) for _ in range(3)]
        for t in waiters:
            t.start()
        time.sleep(0.05)
        release.set()

        for t in [owner] + waiters:
            t.join(5)

        assert errors == []
        assert len(factory.clients) == 1
        assert len(results) == 4
        assert all(db is results[0] for db in results)

    def test_waiters_fail_when_inflight_attempt_fails(self, server_config):
        started, release = threading.Event(), threading.Event()
        factory = ClientFactory(outcomes=[True], ping_started=started, ping_release=release)
        manager = _manager(factory, max_retries=0)
        errors = []

        def run():
            try:
                manager.connect(server_config, wait_timeout=5)
            except Exception as e:
                errors.append(e)

        owner = threading.Thread(target=run)
        owner.start()
        assert started.wait(5)
        waiter = threading.Thread(target=run)
        waiter.start()
        time.sleep(0.05)
        release.set()
        owner.join(5)
        waiter.join(5)

        assert len(errors) == 2
        assert all(isinstance(e, DatabaseConnectionError) for e in errors)

    def test_disconnect_cancels_backoff(self, server_config):
        started = threading.Event()
        factory = ClientFactory(outcomes=[True], ping_started=started)
        # real interruptible wait, long enough to notice if it is not cancelled
        manager = ConnectionManager(client_factory=factory)
        manager.set_retry_policy(max_retries=3, initial_delay_ms=10_000)
        errors = []

        def run():
            try:
                manager.connect(server_config)
            except Exception as e:
                errors.append(e)

        t = threading.Thread(target=run)
        t.start()
        assert started.wait(5)
        manager.disconnect()
        t.join(2)

        assert not t.is_alive()
        assert len(errors) == 1
        assert "cancelled" in str(errors[0])
        assert manager.current_state() == STATE_DISCONNECTED


class TestDisconnect:
    def test_get_handle_requires_connect(self):
        manager = ConnectionManager(client_factory=ClientFactory())
        with pytest.raises(NotConnectedError):
            manager.get_handle()
        with pytest.raises(NotConnectedError):
            manager.get_client()

    def test_disconnect_closes_and_resets(self, server_config):
        factory = ClientFactory()
        manager = _manager(factory)
        manager.connect(server_config)

        manager.disconnect()

        assert factory.clients[0].closed
        assert manager.current_state() == STATE_DISCONNECTED
        with pytest.raises(NotConnectedError):
            manager.get_handle()

    def test_disconnect_is_idempotent(self, server_config):
        manager = _manager(ClientFactory())
        manager.disconnect()
        manager.connect(server_config)
        manager.disconnect()
        manager.disconnect()
        assert manager.current_state() == STATE_DISCONNECTED

    def test_disconnect_swallows_close_errors(self, server_config):
        manager = _manager(ClientFactory(close_error=True))
        manager.connect(server_config)

        manager.disconnect()

        assert manager.current_state() == STATE_DISCONNECTED


class TestExtractDatabaseName:
    @pytest.mark.parametrize("uri,expected", [
        ("mongodb://localhost:27017/shop", "shop"),
        ("mongodb://localhost:27017/shop?retryWrites=true", "shop"),
        ("mongodb+srv://user:pw@cluster0.example.net/analytics?w=majority", "analytics"),
        ("mongodb://localhost:27017", "test"),
        ("mongodb://localhost:27017/", "test"),
        ("mongodb://localhost:27017/?authSource=admin", "test"),
        ("mongodb://localhost:27017/admin", "test"),
    ])
    def test_extract(self, uri, expected):
        assert extract_database_name(uri) == expected
