from abc import abstractmethod
from typing import Optional
from vmplane.database import models
from .base import IRepository

class IInstanceRepository(IRepository[models.Instance]):
    @abstractmethod
    def find_by_domain_name(self, domain_name: str) -> Optional[models.Instance]:
        """하이퍼바이저 도메인 이름으로 인스턴스를 조회합니다."""
        pass
