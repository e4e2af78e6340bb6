import logging
import threading
from typing import Callable, Dict, List, Optional

from vmplane.clients.hypervisor import HypervisorClient
from vmplane.config import settings

logger = logging.getLogger(__name__)


def normalize_node_name(node_name: Optional[str]) -> str:
    return node_name or settings.default_node


def _default_factory(uri: str) -> HypervisorClient:
    from vmplane.clients.libvirt_client import LibvirtClient

    return LibvirtClient(uri)


class NodeConnectionCache:
    """
    노드별 하이퍼바이저 연결을 처음 요청될 때 만들고 이후에는 재사용합니다.

    연결 생성은 락 밖에서 수행하며, 경쟁에서 진 쪽의 연결은 닫지 않고 버립니다.
    연결은 명시적으로 닫지 않습니다.
    """

    def __init__(self, node_uris: Optional[Dict[str, str]] = None,
                 factory: Callable[[str], HypervisorClient] = _default_factory):
        self.node_uris = dict(node_uris) if node_uris is not None else settings.node_uris()
        self.factory = factory
        self._clients: Dict[str, HypervisorClient] = {}
        self._lock = threading.Lock()

    def node_names(self) -> List[str]:
        return sorted(self.node_uris)

    def get(self, node_name: Optional[str] = None) -> HypervisorClient:
        """
        노드 이름에 해당하는 연결을 반환합니다.

        Raises:
            KeyError: 설정에 없는 노드 이름일 때.
        """
        name = normalize_node_name(node_name)
        with self._lock:
            client = self._clients.get(name)
        if client is not None:
            return client

        if name not in self.node_uris:
            raise KeyError(f"Unknown node '{name}'")

        logger.info(f"Opening hypervisor connection for node '{name}' ({self.node_uris[name]})")
        new_client = self.factory(self.node_uris[name])
        with self._lock:
            return self._clients.setdefault(name, new_client)
