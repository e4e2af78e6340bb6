from abc import abstractmethod
from typing import Optional
from vmplane.database import models
from .base import IRepository

class IKeyPairRepository(IRepository[models.KeyPair]):
    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.KeyPair]:
        """이름으로 키 페어를 조회합니다. 이름은 삭제되지 않은 행 사이에서 유일합니다."""
        pass
