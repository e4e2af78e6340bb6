from contextlib import contextmanager
from typing import Iterator, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from vmplane.database import models
from vmplane.database.database import SessionLocal
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import ITemplateRepository
from .base import SqlalchemyRepository

class SqlalchemyTemplateRepository(SqlalchemyRepository[models.Template], ITemplateRepository):
    model = models.Template

    def list_by_location(self, node_name: Optional[str] = None, pool_name: Optional[str] = None) -> List[models.Template]:
        query = self._query()
        if node_name:
            query = query.filter(models.Template.node_name == node_name)
        if pool_name:
            query = query.filter(models.Template.pool_name == pool_name)
        try:
            return query.order_by(models.Template.name).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list templates: {e}") from e


@contextmanager
def template_repository_scope(session_factory=SessionLocal) -> Iterator[SqlalchemyTemplateRepository]:
    """호출한 스레드만 쓰는 새 세션으로 리포지토리를 만들고, 블록이 끝나면 세션을 닫습니다."""
    session = session_factory()
    try:
        yield SqlalchemyTemplateRepository(session)
    finally:
        session.close()
