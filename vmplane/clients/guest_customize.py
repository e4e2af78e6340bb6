import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, List

from vmplane.clients.errors import GuestCustomizeError

logger = logging.getLogger(__name__)

SUPPORTED_DISK_EXTENSIONS = (".qcow2",)


def build_password_args(users: Dict[str, str]) -> List[str]:
    """
    사용자별 비밀번호 설정 인자를 만듭니다.

    Args:
        users: 사용자 이름 -> 새 비밀번호.

    Returns:
        ["--password", "user:password:pw", ...] 형태의 인자 목록.

    Raises:
        GuestCustomizeError: 사용자 이름이 비어 있거나 ':'를 포함할 때.
    """
    args = []
    for username, password in users.items():
        if not username or ":" in username:
            raise GuestCustomizeError(f"Invalid username: '{username}'")
        args += ["--password", f"{username}:password:{password}"]
    return args


def build_remote_reset_command(disk_path: str, users: Dict[str, str], virt_customize_path: str = "virt-customize") -> str:
    """원격 노드에서 디스크 확인과 비밀번호 변경을 한 번에 수행하는 셸 명령을 만듭니다."""
    customize = shlex.join([virt_customize_path, "-a", disk_path, *build_password_args(users)])
    return f"test -f {shlex.quote(disk_path)} && {customize}"


class GuestCustomizeClient(ABC):
    """정지된 게스트 디스크를 오프라인으로 수정하는 도구 인터페이스."""

    @abstractmethod
    def validate_disk_path(self, path: str) -> None:
        pass

    @abstractmethod
    def reset_multiple_passwords(self, path: str, users: Dict[str, str]) -> None:
        pass


class VirtCustomizeClient(GuestCustomizeClient):
    def __init__(self, virt_customize_path: str = "virt-customize", timeout: int = 300):
        self.virt_customize_path = virt_customize_path
        self.timeout = timeout

    def validate_disk_path(self, path):
        if not path:
            raise GuestCustomizeError("Disk path is empty.")
        if not os.path.isfile(path):
            raise GuestCustomizeError(f"Disk file not found: {path}")
        if not path.endswith(SUPPORTED_DISK_EXTENSIONS):
            raise GuestCustomizeError(f"Unsupported disk format: {path}")

    def reset_multiple_passwords(self, path, users):
        """
        virt-customize로 여러 사용자의 비밀번호를 한 번에 변경합니다.
        게스트가 정지된 상태여야 합니다.

        Raises:
            GuestCustomizeError: 경로 검증 또는 virt-customize 실행에 실패했을 때.
        """
        self.validate_disk_path(path)
        command = [self.virt_customize_path, "-a", path, *build_password_args(users)]
        logger.info(f"Resetting passwords for {len(users)} user(s) on {path}")
        try:
            subprocess.run(command, check=True, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            raise GuestCustomizeError(f"virt-customize failed: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise GuestCustomizeError(f"virt-customize timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise GuestCustomizeError("virt-customize command not found. Install libguestfs-tools.") from e
