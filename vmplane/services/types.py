from dataclasses import dataclass, field
from typing import Dict, List, Optional

from vmplane.database import models


@dataclass
class RunInstanceRequest:
    name: Optional[str] = None
    image_id: Optional[str] = None
    volume_size_gb: Optional[int] = None
    memory_mb: Optional[int] = None
    vcpus: Optional[int] = None
    key_names: List[str] = field(default_factory=list)
    user_data: Optional[str] = None


@dataclass
class InstanceStateChange:
    """배치 요청에서 인스턴스 하나의 처리 결과. error가 None이면 성공."""
    instance_id: str
    previous_state: Optional[str]
    current_state: Optional[str]
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class AttributeModification:
    instance_id: str
    applied: Dict[str, object] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failed


@dataclass
class VolumeAttachment:
    volume_id: str
    instance_id: str
    device: str
    state: str = "attached"


@dataclass
class VolumeDescription:
    volume: models.Volume
    state: str
    attachments: List[VolumeAttachment] = field(default_factory=list)


@dataclass
class RegisterTemplateRequest:
    name: str
    pool_name: str
    volume_name: str
    node_name: Optional[str] = None
    description: Optional[str] = None
    source_url: Optional[str] = None
    os: Optional[dict] = None
    features: Optional[dict] = None
    tags: Optional[dict] = None


@dataclass
class RegisterTemplateResult:
    """is_async가 True이면 template은 None이고, 다운로드 완료 후 task 콜백에서 등록됩니다."""
    template: Optional[models.Template] = None
    task: Optional[object] = None
    is_async: bool = False


@dataclass
class ResetPasswordResult:
    instance_id: str
    method: str
    users: List[str] = field(default_factory=list)
    restarted: bool = False


@dataclass
class CreatedKeyPair:
    key_pair: models.KeyPair
    private_key: str
