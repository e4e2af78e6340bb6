from abc import abstractmethod
from typing import List, Optional
from vmplane.database import models
from .base import IRepository

class IVolumeRepository(IRepository[models.Volume]):
    @abstractmethod
    def list_by_state(self, state: Optional[str] = None) -> List[models.Volume]:
        """캐시된 상태로 볼륨을 필터링합니다. state가 None이면 전체."""
        pass
