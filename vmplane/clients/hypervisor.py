from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

# 하이퍼바이저 고유 상태 어휘 (HypervisorClient 구현체가 반환하는 값)
DOMAIN_STATE_NOSTATE = "nostate"
DOMAIN_STATE_RUNNING = "running"
DOMAIN_STATE_BLOCKED = "blocked"
DOMAIN_STATE_PAUSED = "paused"
DOMAIN_STATE_SHUTTING_DOWN = "shutting-down"
DOMAIN_STATE_SHUT_OFF = "shut-off"
DOMAIN_STATE_CRASHED = "crashed"
DOMAIN_STATE_PMSUSPENDED = "pmsuspended"

GIB = 1024 * 1024 * 1024


@dataclass
class StoragePoolInfo:
    name: str
    state: str
    path: str
    capacity_bytes: int = 0
    allocation_bytes: int = 0
    available_bytes: int = 0

    @property
    def is_active(self) -> bool:
        return self.state == "running"


@dataclass
class VolumeInfo:
    name: str
    path: str
    capacity_bytes: int
    allocation_bytes: int
    format: str


@dataclass
class DomainInfo:
    name: str
    uuid: str
    state: str
    memory_kib: int
    vcpus: int


@dataclass
class DomainDisk:
    device: str  # "disk" | "cdrom"
    target_dev: str  # 예: "vda"
    source_file: str
    bus: str = "virtio"


class HypervisorClient(ABC):
    """
    컨트롤 플레인이 사용하는 하이퍼바이저 기능 집합.

    도메인/볼륨/스토리지 풀 조작, 게스트 에이전트 명령 실행, 원격 노드 명령 실행을
    하나의 인터페이스로 노출합니다. 모든 메서드는 실패 시 HypervisorError를,
    대상이 없을 때는 HypervisorNotFoundError를 발생시킵니다.
    """

    @abstractmethod
    def is_remote(self) -> bool:
        """연결 대상이 SSH/TCP 등으로 접근하는 원격 노드인지 여부."""
        pass

    # --- Storage pools ---
    @abstractmethod
    def get_storage_pool(self, pool_name: str) -> StoragePoolInfo:
        pass

    @abstractmethod
    def list_storage_pools(self) -> List[StoragePoolInfo]:
        pass

    @abstractmethod
    def refresh_storage_pool(self, pool_name: str) -> None:
        pass

    # --- Volumes ---
    @abstractmethod
    def create_volume(self, pool_name: str, volume_name: str, size_gb: int, fmt: str) -> VolumeInfo:
        pass

    @abstractmethod
    def get_volume(self, pool_name: str, volume_name: str) -> VolumeInfo:
        pass

    @abstractmethod
    def delete_volume(self, pool_name: str, volume_name: str) -> None:
        pass

    @abstractmethod
    def resize_volume(self, pool_name: str, volume_name: str, size_gb: int) -> None:
        pass

    # --- Domains ---
    @abstractmethod
    def list_domain_names(self) -> List[str]:
        pass

    @abstractmethod
    def get_domain(self, name: str) -> DomainInfo:
        pass

    @abstractmethod
    def get_domain_disks(self, name: str) -> List[DomainDisk]:
        pass

    @abstractmethod
    def create_domain(self, domain_xml: str, start: bool = True) -> DomainInfo:
        """도메인을 정의하고, start가 True이면 곧바로 시작합니다. 시작 실패 시 정의도 되돌립니다."""
        pass

    @abstractmethod
    def start_domain(self, name: str) -> None:
        pass

    @abstractmethod
    def shutdown_domain(self, name: str) -> None:
        """ACPI 종료 요청 (graceful)."""
        pass

    @abstractmethod
    def destroy_domain(self, name: str) -> None:
        """강제 종료."""
        pass

    @abstractmethod
    def reboot_domain(self, name: str) -> None:
        pass

    @abstractmethod
    def delete_domain(self, name: str) -> None:
        """실행 중이면 강제 종료한 뒤 정의를 해제합니다."""
        pass

    @abstractmethod
    def attach_disk(self, domain_name: str, volume_path: str, device: str) -> None:
        pass

    @abstractmethod
    def detach_disk(self, domain_name: str, device: str) -> None:
        pass

    @abstractmethod
    def set_memory(self, domain_name: str, memory_kib: int, live: bool) -> None:
        pass

    @abstractmethod
    def set_vcpus(self, domain_name: str, vcpus: int, live: bool) -> None:
        pass

    # --- Guest agent ---
    @abstractmethod
    def guest_agent_available(self, domain_name: str) -> bool:
        pass

    @abstractmethod
    def guest_agent_command(self, domain_name: str, command: str, timeout: int = 30) -> str:
        pass

    # --- Remote node ---
    @abstractmethod
    def execute_remote_command(self, command: str) -> str:
        """원격 노드에서 셸 명령을 실행하고 표준 출력을 반환합니다. 0이 아닌 종료 코드는 HypervisorError."""
        pass

    @abstractmethod
    def read_remote_file(self, path: str) -> bytes:
        pass

    @abstractmethod
    def write_remote_file(self, path: str, data: bytes) -> None:
        pass

    @abstractmethod
    def list_remote_files(self, directory: str, pattern: str = "*") -> List[str]:
        pass

    # --- cloud-init ---
    @abstractmethod
    def create_cloud_init_iso(self, output_dir: str, name: str, meta_data: str, user_data: str) -> str:
        """NoCloud 데이터소스 ISO를 노드에 생성하고 그 경로를 반환합니다."""
        pass


def volume_id_from_path(path: Optional[str]) -> str:
    """디스크 경로의 파일 이름에서 확장자를 뗀 값을 볼륨 ID로 사용합니다."""
    if not path:
        return ""
    filename = path.rstrip("/").split("/")[-1]
    stem, _, _ = filename.rpartition(".")
    return stem or filename
