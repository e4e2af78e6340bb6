from typing import List
from sqlalchemy.exc import SQLAlchemyError
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import ISnapshotRepository
from .base import SqlalchemyRepository

class SqlalchemySnapshotRepository(SqlalchemyRepository[models.Snapshot], ISnapshotRepository):
    model = models.Snapshot

    def list_by_volume_id(self, volume_id: str) -> List[models.Snapshot]:
        try:
            return self._query().filter(models.Snapshot.volume_id == volume_id).order_by(models.Snapshot.created_at).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list snapshots of '{volume_id}': {e}") from e
