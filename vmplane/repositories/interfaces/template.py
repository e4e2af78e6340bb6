from abc import abstractmethod
from typing import List, Optional
from vmplane.database import models
from .base import IRepository

class ITemplateRepository(IRepository[models.Template]):
    @abstractmethod
    def list_by_location(self, node_name: Optional[str] = None, pool_name: Optional[str] = None) -> List[models.Template]:
        """노드/풀 조건으로 템플릿을 조회합니다. None인 조건은 무시합니다."""
        pass
