from abc import ABC, abstractmethod
from typing import Generic, List, Optional, TypeVar

ModelT = TypeVar("ModelT")

class IRepository(ABC, Generic[ModelT]):
    """
    모든 리소스 리포지토리의 공통 연산.
    소프트 삭제된 행은 조회 결과에 포함되지 않으며, 실패 시 RepositoryError를 발생시킵니다.
    """

    @abstractmethod
    def create(self, model: ModelT) -> ModelT:
        """새로운 레코드를 데이터베이스에 생성합니다."""
        pass

    @abstractmethod
    def update(self, model: ModelT) -> ModelT:
        """변경된 레코드를 저장합니다."""
        pass

    @abstractmethod
    def find_by_id(self, resource_id: str) -> Optional[ModelT]:
        """ID로 레코드를 조회합니다. 없거나 삭제되었으면 None."""
        pass

    @abstractmethod
    def list(self) -> List[ModelT]:
        pass

    @abstractmethod
    def soft_delete(self, model: ModelT) -> bool:
        """deleted_at을 채워 레코드를 삭제된 것으로 표시합니다."""
        pass
