from abc import abstractmethod
from typing import Optional
from vmplane.database import models
from .base import IRepository

class IImageRepository(IRepository[models.Image]):
    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.Image]:
        """이름으로 특정 이미지를 조회합니다."""
        pass
