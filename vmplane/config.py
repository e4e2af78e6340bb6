"""vmplane 설정. 환경 변수(VMPLANE_*)에서 값을 읽어옵니다."""

from typing import Dict

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """컨트롤 플레인 전역 설정."""

    # 메타데이터 DB
    database_url: str = "sqlite:///vmplane_metadata.db"

    # 하이퍼바이저 연결
    libvirt_uri: str = "qemu:///system"
    default_node: str = "local"
    nodes: Dict[str, str] = {}  # 노드 이름 -> libvirt URI (비어 있으면 default_node만 사용)

    # 스토리지 풀
    default_pool: str = "default"
    images_pool: str = "images"

    # 기본 이미지 (ImageID 없이 RunInstance 요청 시 사용)
    default_image_id: str = "ubuntu-jammy"
    default_image_path: str = "/var/lib/libvirt/images/images/ubuntu-jammy.qcow2"
    default_image_size_gb: int = 3

    # 인스턴스 기본 사양
    default_volume_size_gb: int = 20
    default_memory_mb: int = 2048
    default_vcpus: int = 2
    network_bridge: str = "br0"
    disk_bus: str = "virtio"
    cloud_init_dir: str = "/var/lib/libvirt/images/cloud-init"

    # 외부 도구
    qemu_img_path: str = "qemu-img"
    qemu_img_timeout: int = 1800  # seconds
    virt_customize_path: str = "virt-customize"
    virt_customize_timeout: int = 300  # seconds
    guest_agent_timeout: int = 30  # seconds

    # 비밀번호 재설정 시 인스턴스 정지 대기
    stop_wait_timeout: float = 30.0
    stop_wait_interval: float = 1.0

    # 백그라운드 다운로드
    download_timeout: float = 3600.0
    download_task_ttl: float = 3600.0

    log_level: str = "INFO"

    class Config:
        env_prefix = "VMPLANE_"

    def node_uris(self) -> Dict[str, str]:
        """노드 이름 -> URI 매핑. 설정이 없으면 기본 노드 하나만 반환합니다."""
        uris = dict(self.nodes)
        uris.setdefault(self.default_node, self.libvirt_uri)
        return uris


settings = Settings()
