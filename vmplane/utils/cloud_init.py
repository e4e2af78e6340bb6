from typing import Iterable, Optional

import yaml


def render_meta_data(instance_id: str, hostname: str) -> str:
    return yaml.safe_dump({"instance-id": instance_id, "local-hostname": hostname}, sort_keys=False)


def render_user_data(public_keys: Iterable[str] = (), user_data: Optional[str] = None) -> str:
    """
    NoCloud user-data를 만듭니다.

    사용자가 준 user-data가 '#cloud-config' 문서이면 그 위에 SSH 공개키를 합치고,
    그 밖의 형식(셸 스크립트 등)이면 공개키가 없을 때에 한해 그대로 사용합니다.

    Args:
        public_keys: 기본 사용자에게 등록할 SSH 공개키 목록.
        user_data: 사용자가 제공한 user-data 원문.

    Returns:
        cloud-init이 읽을 user-data 문자열.

    Raises:
        ValueError: cloud-config가 아닌 user-data와 공개키를 함께 요청했을 때,
            또는 cloud-config 문서가 매핑이 아닐 때.
    """
    keys = [key.strip() for key in public_keys if key and key.strip()]

    if user_data and not user_data.lstrip().startswith("#cloud-config"):
        if keys:
            raise ValueError("SSH keys can only be merged into '#cloud-config' user-data")
        return user_data

    config = {}
    if user_data:
        config = yaml.safe_load(user_data) or {}
        if not isinstance(config, dict):
            raise ValueError("cloud-config user-data must be a mapping")

    if keys:
        existing = config.get("ssh_authorized_keys") or []
        config["ssh_authorized_keys"] = list(existing) + [k for k in keys if k not in existing]

    return "#cloud-config\n" + yaml.safe_dump(config, sort_keys=False, default_flow_style=False)
