# tests/clients/test_node_connections.py
import threading

import pytest
from unittest.mock import MagicMock

from vmplane.clients.errors import HypervisorError
from vmplane.clients.hypervisor import HypervisorClient
from vmplane.clients.node_connections import NodeConnectionCache

NODES = {"local": "qemu:///system", "node-2": "qemu+ssh://root@node-2/system"}

@pytest.fixture
def factory() -> MagicMock:
    """URI마다 새 가짜 클라이언트를 만드는 팩토리."""
    return MagicMock(side_effect=lambda uri: MagicMock(spec=HypervisorClient, uri=uri))


def test_connection_is_created_once_and_reused(factory):
    cache = NodeConnectionCache(node_uris=NODES, factory=factory)

    first = cache.get("node-2")
    second = cache.get("node-2")

    assert first is second
    assert first.uri == "qemu+ssh://root@node-2/system"
    factory.assert_called_once_with("qemu+ssh://root@node-2/system")

def test_empty_name_means_default_node(factory):
    cache = NodeConnectionCache(node_uris=NODES, factory=factory)

    assert cache.get(None) is cache.get("local")

def test_unknown_node_raises_key_error(factory):
    cache = NodeConnectionCache(node_uris=NODES, factory=factory)

    with pytest.raises(KeyError):
        cache.get("node-9")
    factory.assert_not_called()

def test_failed_connection_is_not_cached(factory):
    """연결 실패는 캐시되지 않으므로 다음 요청에서 다시 시도합니다."""
    factory.side_effect = [HypervisorError("connection refused"), MagicMock(spec=HypervisorClient)]
    cache = NodeConnectionCache(node_uris=NODES, factory=factory)

    with pytest.raises(HypervisorError):
        cache.get("node-2")
    assert cache.get("node-2") is not None
    assert factory.call_count == 2

def test_concurrent_first_use_returns_single_client(factory):
    cache = NodeConnectionCache(node_uris=NODES, factory=factory)
    barrier = threading.Barrier(6)
    clients = []

    def worker():
        barrier.wait()
        clients.append(cache.get("node-2"))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({id(client) for client in clients}) == 1

def test_node_names_are_sorted(factory):
    assert NodeConnectionCache(node_uris=NODES, factory=factory).node_names() == ["local", "node-2"]
