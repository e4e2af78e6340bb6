import uuid

INSTANCE_PREFIX = "i"
VOLUME_PREFIX = "vol"
IMAGE_PREFIX = "ami"
SNAPSHOT_PREFIX = "snap"
KEYPAIR_PREFIX = "key"
TEMPLATE_PREFIX = "tmpl"
TASK_PREFIX = "task"


def generate_id(prefix: str) -> str:
    """'<prefix>-<17자리 16진수>' 형태의 리소스 ID를 만듭니다. 예: i-0a1b2c3d4e5f67890"""
    return f"{prefix}-{uuid.uuid4().hex[:17]}"
