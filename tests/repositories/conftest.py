# tests/repositories/conftest.py
import pytest
from sqlalchemy.orm import sessionmaker

from vmplane.database.database import Base, make_engine
from vmplane.database import models  # noqa: F401  테이블 등록


@pytest.fixture
def engine():
    """테스트마다 비어 있는 인메모리 SQLite 엔진."""
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()
