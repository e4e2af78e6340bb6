from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from vmplane.config import settings


def make_engine(url: str):
    # SQLite는 요청 스레드와 다운로드 스레드가 같은 연결을 쓰므로 check_same_thread를 끈다
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


# SQLAlchemy 엔진 생성 (접속 문자열은 VMPLANE_DATABASE_URL로 변경 가능)
engine = make_engine(settings.database_url)

# autocommit=False, autoflush=False: 리포지토리가 명시적으로 commit을 호출해야 DB에 반영됩니다.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()
