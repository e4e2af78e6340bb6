from sqlalchemy import Column, DateTime, func


class TimestampMixin:
    """
    생성/수정/삭제 시각을 기록하는 공통 컬럼.
    deleted_at이 채워진 행은 소프트 삭제된 것으로 간주하며 조회에서 제외됩니다.
    """
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime, nullable=True, index=True)
