import logging
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

from vmplane.clients.errors import DiskToolError

logger = logging.getLogger(__name__)


class DiskToolClient(ABC):
    """디스크 이미지 조작 도구 인터페이스 (변환, backing file 복제, 리사이즈, 내부 스냅샷)."""

    @abstractmethod
    def convert(self, src_fmt: str, dst_fmt: str, src: str, dst: str, snapshot_name: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def clone_from_backing_file(self, fmt: str, backing_fmt: str, backing: str, dst: str) -> None:
        pass

    @abstractmethod
    def resize(self, path: str, size_gb: int) -> None:
        pass

    @abstractmethod
    def snapshot_create(self, path: str, name: str) -> None:
        pass

    @abstractmethod
    def snapshot_delete(self, path: str, name: str) -> None:
        pass


class QemuImgClient(DiskToolClient):
    def __init__(self, qemu_img_path: str = "qemu-img", timeout: int = 1800):
        self.qemu_img_path = qemu_img_path
        self.timeout = timeout

    def _run(self, args: List[str]) -> str:
        command = [self.qemu_img_path, *args]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(command, check=True, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            raise DiskToolError(f"qemu-img {args[0]} failed: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise DiskToolError(f"qemu-img {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise DiskToolError("qemu-img command not found. Install qemu-utils.") from e
        return result.stdout

    def convert(self, src_fmt, dst_fmt, src, dst, snapshot_name=None):
        """
        원본 이미지를 대상 포맷으로 블록 단위 복사합니다.

        Args:
            src_fmt: 원본 이미지 포맷.
            dst_fmt: 대상 이미지 포맷.
            src: 원본 파일 경로.
            dst: 대상 파일 경로. 이미 있으면 덮어씁니다.
            snapshot_name: 지정하면 원본의 내부 스냅샷 시점을 내보냅니다.

        Raises:
            DiskToolError: qemu-img 실행에 실패했을 때.
        """
        args = ["convert", "-f", src_fmt, "-O", dst_fmt]
        if snapshot_name:
            args += ["-l", f"snapshot.name={snapshot_name}"]
        self._run(args + [src, dst])

    def clone_from_backing_file(self, fmt, backing_fmt, backing, dst):
        """backing 파일을 참조하는 CoW 디스크를 생성합니다."""
        self._run(["create", "-f", fmt, "-F", backing_fmt, "-b", backing, dst])

    def resize(self, path, size_gb):
        self._run(["resize", path, f"{size_gb}G"])

    def snapshot_create(self, path, name):
        self._run(["snapshot", "-c", name, path])

    def snapshot_delete(self, path, name):
        self._run(["snapshot", "-d", name, path])
