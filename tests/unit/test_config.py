"""Tests for configuration loading."""

from flowcore.config import load_config
from flowcore.locks import DistributedLock, InMemoryLockManager, RedisLockManager
from flowcore.persistence import InMemoryWorkflowStore, SQLiteWorkflowStore, get_store
from flowcore.transports import get_transport
from flowcore.transports.inmemory import InMemoryTransport
from flowcore.transports.redis import RedisTransport


def test_load_config_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWCORE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FLOWCORE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.database_url is None
    assert config.transport.backend == "inmemory"
    assert config.locks.ttl_seconds == 30.0
    assert config.retry.max_attempts == 3
    assert config.worker.worker_count == 2


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
locks:
  backend: redis
  ttl_seconds: 12
retry:
  max_attempts: 5
worker:
  worker_count: 4
"""
    )
    monkeypatch.setenv("FLOWCORE_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.locks.backend == "redis"
    assert config.locks.ttl_seconds == 12
    assert config.retry.max_attempts == 5
    assert config.worker.worker_count == 4


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("FLOWCORE_CONFIG", str(config_path))
    monkeypatch.setenv("FLOWCORE_DATABASE_URL", "sqlite:///from-env.db")

    assert load_config().database_url == "sqlite:///from-env.db"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("FLOWCORE_CONFIG", str(config_path))
    monkeypatch.delenv("FLOWCORE_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_transport_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWCORE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("FLOWCORE_TRANSPORT", "inmemory")
    assert isinstance(get_transport(), InMemoryTransport)


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("FLOWCORE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert isinstance(get_store(), InMemoryWorkflowStore)
    store = get_store(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(store, SQLiteWorkflowStore)
    assert store.db_path == str(tmp_path / "wf.db")


def test_lock_backend_from_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("locks:\n  backend: redis\n  redis:\n    host: lockhost\n")
    monkeypatch.setenv("FLOWCORE_CONFIG", str(config_path))

    locks = DistributedLock.from_config(load_config().locks)
    assert isinstance(locks.manager, RedisLockManager)
    assert locks.manager.host == "lockhost"

    monkeypatch.setenv("FLOWCORE_CONFIG", str(tmp_path / "missing.yaml"))
    assert isinstance(DistributedLock.from_config(load_config().locks).manager, InMemoryLockManager)
