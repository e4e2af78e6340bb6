import logging
import os
from typing import List, Optional

from vmplane.clients.errors import HypervisorError, HypervisorNotFoundError
from vmplane.clients.hypervisor import GIB, HypervisorClient
from vmplane.config import settings
from vmplane.database import models
from vmplane.repositories.interfaces import IImageRepository
from vmplane.services.exceptions import ImageNotFoundError, InvalidParameterError, UnderlyingToolError, VolumeNotFoundError
from vmplane.utils.idgen import IMAGE_PREFIX, generate_id

logger = logging.getLogger(__name__)

class ImageService:
    def __init__(self, image_repo: IImageRepository, hypervisor: HypervisorClient,
                 default_image_id: str = settings.default_image_id,
                 default_image_path: str = settings.default_image_path,
                 default_image_size_gb: int = settings.default_image_size_gb,
                 images_pool: str = settings.images_pool):
        """
        ImageService를 초기화합니다.

        Args:
            image_repo: 이미지 데이터에 접근하기 위한 리포지토리 객체.
            hypervisor: 이미지 파일 정보를 읽을 하이퍼바이저 클라이언트.
            default_image_id: ImageID 없이 요청했을 때 사용할 이미지 ID.
            default_image_path: 기본 이미지가 DB에 없을 때 사용할 파일 경로.
            default_image_size_gb: 기본 이미지의 가상 디스크 크기.
            images_pool: 기반 이미지가 있는 스토리지 풀.
        """
        self.image_repo = image_repo
        self.hypervisor = hypervisor
        self.default_image_id = default_image_id
        self.default_image_path = default_image_path
        self.default_image_size_gb = default_image_size_gb
        self.images_pool = images_pool

    def get_image(self, image_id: str) -> models.Image:
        """
        ID(또는 이름)로 이미지를 찾습니다.

        설정된 기본 이미지는 DB에 등록되어 있지 않아도 설정값으로 만든 레코드를 반환합니다.

        Raises:
            ImageNotFoundError: 이미지를 찾지 못했을 때.
        """
        image = self.image_repo.find_by_id(image_id) or self.image_repo.find_by_name(image_id)
        if image:
            return image
        if image_id == self.default_image_id:
            return self._default_image()
        raise ImageNotFoundError(f"Image '{image_id}' not found.")

    def resolve_image(self, image_id: Optional[str] = None) -> models.Image:
        """ImageID가 비어 있으면 기본 이미지를 반환합니다."""
        return self.get_image(image_id or self.default_image_id)

    def describe_images(self) -> List[models.Image]:
        return self.image_repo.list()

    def register_image(self, name: str, pool: str, volume_name: str, description: Optional[str] = None) -> models.Image:
        """
        스토리지 풀에 이미 있는 볼륨 파일을 이미지로 등록합니다.
        크기, 포맷, 경로는 하이퍼바이저에서 읽어옵니다.

        Args:
            name: 이미지 이름.
            pool: 볼륨이 있는 스토리지 풀.
            volume_name: 풀 안의 볼륨 파일 이름.
            description: 설명.

        Returns:
            등록된 이미지 레코드.

        Raises:
            InvalidParameterError: 필수 값이 비었을 때.
            VolumeNotFoundError: 풀에 해당 볼륨이 없을 때.
            UnderlyingToolError: 하이퍼바이저 조회에 실패했을 때.
        """
        if not name or not pool or not volume_name:
            raise InvalidParameterError("name, pool and volume_name are required.")

        try:
            info = self.hypervisor.get_volume(pool, volume_name)
        except HypervisorNotFoundError as e:
            raise VolumeNotFoundError(f"Volume '{volume_name}' not found in pool '{pool}'.") from e
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to read volume '{volume_name}': {e}") from e

        image = models.Image(
            id=generate_id(IMAGE_PREFIX),
            name=name,
            pool=pool,
            path=info.path,
            size_gb=max(1, -(-info.capacity_bytes // GIB)),
            format=info.format,
            description=description,
        )
        self.image_repo.create(image)
        logger.info(f"Image '{image.id}' ({name}) registered from {info.path}")
        return image

    def deregister_image(self, image_id: str) -> bool:
        """
        이미지 레코드를 소프트 삭제합니다. 이 이미지에서 만든 볼륨과 이미지 파일은 그대로 둡니다.

        Raises:
            ImageNotFoundError: DB에 등록된 이미지가 아닐 때.
        """
        image = self.image_repo.find_by_id(image_id)
        if not image:
            raise ImageNotFoundError(f"Image '{image_id}' not found.")
        self.image_repo.soft_delete(image)
        logger.info(f"Image '{image_id}' deregistered.")
        return True

    def _default_image(self) -> models.Image:
        return models.Image(
            id=self.default_image_id,
            name=self.default_image_id,
            pool=self.images_pool,
            path=self.default_image_path,
            size_gb=self.default_image_size_gb,
            format=os.path.splitext(self.default_image_path)[1].lstrip(".") or "qcow2",
        )
