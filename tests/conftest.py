# tests/conftest.py
import xml.etree.ElementTree as ET
from typing import Dict, List, Tuple

import pytest

from vmplane.clients.errors import HypervisorError, HypervisorNotFoundError
from vmplane.clients.hypervisor import (
    DOMAIN_STATE_RUNNING,
    DOMAIN_STATE_SHUT_OFF,
    DOMAIN_STATE_SHUTTING_DOWN,
    GIB,
    DomainDisk,
    DomainInfo,
    HypervisorClient,
    StoragePoolInfo,
    VolumeInfo,
)

# ===================================================================
#  테스트를 위한 가짜 하이퍼바이저
# ===================================================================

class FakeHypervisor(HypervisorClient):
    """
    메모리 안에서 풀/볼륨/도메인을 흉내 내는 가짜 하이퍼바이저.

    failures에 메서드 이름 -> 예외를 넣으면 해당 메서드가 그 예외를 발생시킵니다.
    calls에는 (메서드 이름, 인자) 튜플이 호출 순서대로 쌓입니다.
    """

    def __init__(self, remote: bool = False):
        self.remote = remote
        self.pools: Dict[str, StoragePoolInfo] = {}
        self.volumes: Dict[Tuple[str, str], VolumeInfo] = {}
        self.domains: Dict[str, DomainInfo] = {}
        self.disks: Dict[str, List[DomainDisk]] = {}
        self.agents: Dict[str, bool] = {}
        self.agent_replies: List[str] = []
        self.remote_outputs: Dict[str, str] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    # --- 테스트 준비용 헬퍼 ---
    def add_pool(self, name: str, path: str, state: str = "running") -> StoragePoolInfo:
        self.pools[name] = StoragePoolInfo(name=name, state=state, path=path)
        return self.pools[name]

    def add_volume(self, pool: str, name: str, size_gb: int, fmt: str = "qcow2") -> VolumeInfo:
        info = VolumeInfo(name=name, path=f"{self.pools[pool].path}/{name}", capacity_bytes=size_gb * GIB,
                          allocation_bytes=0, format=fmt)
        self.volumes[(pool, name)] = info
        return info

    def add_domain(self, name: str, state: str = DOMAIN_STATE_RUNNING, disk_path: str = None,
                   memory_kib: int = 2048 * 1024, vcpus: int = 2) -> DomainInfo:
        self.domains[name] = DomainInfo(name=name, uuid=f"uuid-{name}", state=state, memory_kib=memory_kib, vcpus=vcpus)
        self.disks[name] = [DomainDisk(device="disk", target_dev="vda", source_file=disk_path)] if disk_path else []
        return self.domains[name]

    def called(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args):
        self.calls.append((method, args))
        if method in self.failures:
            raise self.failures[method]

    def _domain(self, name: str) -> DomainInfo:
        if name not in self.domains:
            raise HypervisorNotFoundError(f"Domain '{name}' not found")
        return self.domains[name]

    def _pool(self, name: str) -> StoragePoolInfo:
        if name not in self.pools:
            raise HypervisorNotFoundError(f"Storage pool '{name}' not found")
        return self.pools[name]

    # --- HypervisorClient ---
    def is_remote(self):
        return self.remote

    def get_storage_pool(self, pool_name):
        self._record("get_storage_pool", pool_name)
        return self._pool(pool_name)

    def list_storage_pools(self):
        return list(self.pools.values())

    def refresh_storage_pool(self, pool_name):
        self._record("refresh_storage_pool", pool_name)
        self._pool(pool_name)

    def create_volume(self, pool_name, volume_name, size_gb, fmt):
        self._record("create_volume", pool_name, volume_name, size_gb, fmt)
        self._pool(pool_name)
        if (pool_name, volume_name) in self.volumes:
            raise HypervisorError(f"Volume '{volume_name}' already exists")
        return self.add_volume(pool_name, volume_name, size_gb, fmt)

    def get_volume(self, pool_name, volume_name):
        self._record("get_volume", pool_name, volume_name)
        if (pool_name, volume_name) not in self.volumes:
            raise HypervisorNotFoundError(f"Volume '{volume_name}' not found")
        return self.volumes[(pool_name, volume_name)]

    def delete_volume(self, pool_name, volume_name):
        self._record("delete_volume", pool_name, volume_name)
        if self.volumes.pop((pool_name, volume_name), None) is None:
            raise HypervisorNotFoundError(f"Volume '{volume_name}' not found")

    def resize_volume(self, pool_name, volume_name, size_gb):
        self._record("resize_volume", pool_name, volume_name, size_gb)
        self.get_volume(pool_name, volume_name).capacity_bytes = size_gb * GIB

    def list_domain_names(self):
        self._record("list_domain_names")
        return sorted(self.domains)

    def get_domain(self, name):
        self._record("get_domain", name)
        return self._domain(name)

    def get_domain_disks(self, name):
        self._record("get_domain_disks", name)
        self._domain(name)
        return list(self.disks[name])

    def create_domain(self, domain_xml, start=True):
        self._record("create_domain", domain_xml, start)
        root = ET.fromstring(domain_xml)
        name = root.findtext("name")
        disk_source = root.find("./devices/disk[@device='disk']/source")
        info = self.add_domain(
            name,
            state=DOMAIN_STATE_RUNNING if start else DOMAIN_STATE_SHUT_OFF,
            disk_path=disk_source.get("file") if disk_source is not None else None,
            memory_kib=int(root.findtext("memory")),
            vcpus=int(root.findtext("vcpu")),
        )
        info.uuid = root.findtext("uuid")
        return info

    def start_domain(self, name):
        self._record("start_domain", name)
        self._domain(name).state = DOMAIN_STATE_RUNNING

    def shutdown_domain(self, name):
        self._record("shutdown_domain", name)
        self._domain(name).state = DOMAIN_STATE_SHUTTING_DOWN

    def destroy_domain(self, name):
        self._record("destroy_domain", name)
        self._domain(name).state = DOMAIN_STATE_SHUT_OFF

    def reboot_domain(self, name):
        self._record("reboot_domain", name)
        self._domain(name)

    def delete_domain(self, name):
        self._record("delete_domain", name)
        self._domain(name)
        del self.domains[name]
        del self.disks[name]

    def attach_disk(self, domain_name, volume_path, device):
        self._record("attach_disk", domain_name, volume_path, device)
        self._domain(domain_name)
        self.disks[domain_name].append(
            DomainDisk(device="disk", target_dev=device.replace("/dev/", ""), source_file=volume_path)
        )

    def detach_disk(self, domain_name, device):
        self._record("detach_disk", domain_name, device)
        target = device.replace("/dev/", "")
        self.disks[domain_name] = [d for d in self.disks[domain_name] if d.target_dev != target]

    def set_memory(self, domain_name, memory_kib, live):
        self._record("set_memory", domain_name, memory_kib, live)
        self._domain(domain_name).memory_kib = memory_kib

    def set_vcpus(self, domain_name, vcpus, live):
        self._record("set_vcpus", domain_name, vcpus, live)
        self._domain(domain_name).vcpus = vcpus

    def guest_agent_available(self, domain_name):
        self._record("guest_agent_available", domain_name)
        return self.agents.get(domain_name, False)

    def guest_agent_command(self, domain_name, command, timeout=30):
        self._record("guest_agent_command", domain_name, command, timeout)
        return self.agent_replies.pop(0) if self.agent_replies else '{"return": {"pid": 1}}'

    def execute_remote_command(self, command):
        self._record("execute_remote_command", command)
        for prefix, output in self.remote_outputs.items():
            if command.startswith(prefix):
                return output
        return ""

    def read_remote_file(self, path):
        self._record("read_remote_file", path)
        return b""

    def write_remote_file(self, path, data):
        self._record("write_remote_file", path, data)

    def list_remote_files(self, directory, pattern="*"):
        self._record("list_remote_files", directory, pattern)
        return []

    def create_cloud_init_iso(self, output_dir, name, meta_data, user_data):
        self._record("create_cloud_init_iso", output_dir, name, meta_data, user_data)
        return f"{output_dir}/{name}-cidata.iso"


@pytest.fixture
def fake_hypervisor() -> FakeHypervisor:
    """기본 풀(default)과 이미지 풀(images)이 준비된 가짜 하이퍼바이저를 반환합니다."""
    hypervisor = FakeHypervisor()
    hypervisor.add_pool("default", "/var/lib/libvirt/images")
    hypervisor.add_pool("images", "/var/lib/libvirt/images/images")
    return hypervisor
