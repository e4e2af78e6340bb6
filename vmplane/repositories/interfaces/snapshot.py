from abc import abstractmethod
from typing import List
from vmplane.database import models
from .base import IRepository

class ISnapshotRepository(IRepository[models.Snapshot]):
    @abstractmethod
    def list_by_volume_id(self, volume_id: str) -> List[models.Snapshot]:
        """특정 볼륨에서 만든 스냅샷 목록을 조회합니다."""
        pass
