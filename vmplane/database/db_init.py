import logging

from sqlalchemy.exc import SQLAlchemyError

from vmplane.config import settings
from vmplane.log import configure_logging

from .database import Base, SessionLocal, engine
from .models import Image

logger = logging.getLogger(__name__)


def initialize_db(bind=engine, session_factory=SessionLocal):
    """
    테이블을 생성하고, 기본 이미지 레코드가 없으면 설정값으로 등록합니다.

    여러 번 실행해도 결과가 같습니다. 기본 이미지 파일 자체는 만들지 않습니다.
    """
    logger.info(f"Initializing database at {bind.url}")

    # 모든 테이블을 생성합니다. (이미 존재하면 생성하지 않음)
    Base.metadata.create_all(bind=bind)

    db = session_factory()
    try:
        if db.get(Image, settings.default_image_id):
            logger.info(f"Default image '{settings.default_image_id}' already registered; skipping seed.")
            return

        db.add(Image(
            id=settings.default_image_id,
            name=settings.default_image_id,
            pool=settings.images_pool,
            path=settings.default_image_path,
            size_gb=settings.default_image_size_gb,
            format="qcow2",
            description="Default boot image",
        ))
        db.commit()
        logger.info(f"Default image '{settings.default_image_id}' registered from {settings.default_image_path}")
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == '__main__':
    configure_logging(settings.log_level)
    initialize_db()
