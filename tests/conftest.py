"""Shared fixtures: a temporary store, in-memory drivers and a wired coordinator."""

from __future__ import annotations

import pytest

from gatehouse.core.config import ServerSettings
from gatehouse.network.drivers import MemoryInterfaceDriver
from gatehouse.proxy.drivers import MemoryProxyDriver
from gatehouse.server.coordinator import Coordinator
from gatehouse.store.sqlite import SQLiteStorage

BASE_DOMAIN = "tunnels.example.com"


@pytest.fixture
def storage(tmp_path):
    """Initialized SQLite store in a temporary directory."""
    store = SQLiteStorage(tmp_path / "gatehouse.db")
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path):
    return ServerSettings(
        _env_file=None,
        data_dir=tmp_path / "server",
        base_domain=BASE_DOMAIN,
        endpoint="vpn.example.com:51820",
        nginx_sites_path=tmp_path / "sites",
        tls_cert_dir=tmp_path / "certs",
        nginx_log_dir=tmp_path / "logs",
        use_sudo=False,
        activity_interval=0,
    )


@pytest.fixture
def interface():
    return MemoryInterfaceDriver("wg0")


@pytest.fixture
def proxy():
    return MemoryProxyDriver()


@pytest.fixture
def coordinator(settings, interface, proxy):
    """Coordinator over in-memory drivers with its store initialized."""
    coord = Coordinator(settings, SQLiteStorage(settings.database_path), interface, proxy)
    coord.initialize()
    coord.reconciler.retry_delay = 0
    yield coord
    coord.storage.close()
