from typing import List, Optional
from sqlalchemy.exc import SQLAlchemyError
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import IVolumeRepository
from .base import SqlalchemyRepository

class SqlalchemyVolumeRepository(SqlalchemyRepository[models.Volume], IVolumeRepository):
    model = models.Volume

    def list_by_state(self, state: Optional[str] = None) -> List[models.Volume]:
        query = self._query()
        if state:
            query = query.filter(models.Volume.state == state)
        try:
            return query.order_by(models.Volume.created_at).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list volumes: {e}") from e
