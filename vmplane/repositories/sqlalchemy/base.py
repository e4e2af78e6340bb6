from datetime import datetime, timezone
from typing import Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vmplane.repositories.exceptions import RepositoryError

ModelT = TypeVar("ModelT")

class SqlalchemyRepository(Generic[ModelT]):
    """IRepository 공통 연산의 SQLAlchemy 구현. 각 연산은 자체적으로 commit합니다."""

    model: Type[ModelT]

    def __init__(self, db_session: Session):
        self.db = db_session

    def _query(self):
        return self.db.query(self.model).filter(self.model.deleted_at.is_(None))

    def _save(self, instance: ModelT) -> ModelT:
        try:
            self.db.add(instance)
            self.db.commit()
            self.db.refresh(instance)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Failed to save {self.model.__name__} '{getattr(instance, 'id', None)}': {e}") from e
        return instance

    def create(self, model: ModelT) -> ModelT:
        return self._save(model)

    def update(self, model: ModelT) -> ModelT:
        return self._save(model)

    def find_by_id(self, resource_id: str) -> Optional[ModelT]:
        try:
            return self._query().filter(self.model.id == resource_id).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load {self.model.__name__} '{resource_id}': {e}") from e

    def list(self) -> List[ModelT]:
        try:
            return self._query().order_by(self.model.created_at).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list {self.model.__name__}: {e}") from e

    def soft_delete(self, model: ModelT) -> bool:
        if model is None:
            return False
        model.deleted_at = datetime.now(timezone.utc)
        self._save(model)
        return True
