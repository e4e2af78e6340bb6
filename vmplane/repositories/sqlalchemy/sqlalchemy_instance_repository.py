from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import IInstanceRepository
from .base import SqlalchemyRepository

class SqlalchemyInstanceRepository(SqlalchemyRepository[models.Instance], IInstanceRepository):
    model = models.Instance

    def find_by_domain_name(self, domain_name: str) -> Optional[models.Instance]:
        try:
            return self._query().filter(models.Instance.domain_name == domain_name).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load instance for domain '{domain_name}': {e}") from e
