from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import IImageRepository
from .base import SqlalchemyRepository

class SqlalchemyImageRepository(SqlalchemyRepository[models.Image], IImageRepository):
    model = models.Image

    def find_by_name(self, name: str) -> Optional[models.Image]:
        try:
            return self._query().filter(models.Image.name == name).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load image '{name}': {e}") from e
