from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import IKeyPairRepository
from .base import SqlalchemyRepository

class SqlalchemyKeyPairRepository(SqlalchemyRepository[models.KeyPair], IKeyPairRepository):
    model = models.KeyPair

    def find_by_name(self, name: str) -> Optional[models.KeyPair]:
        try:
            return self._query().filter(models.KeyPair.name == name).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load key pair '{name}': {e}") from e
