import logging
from typing import Callable, Optional, TypeVar

from vmplane.repositories.exceptions import RepositoryError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def save_best_effort(save: Callable[[T], T], record: T, what: str) -> Optional[T]:
    """
    하이퍼바이저 작업이 이미 성공한 뒤의 메타데이터 저장.
    저장에 실패해도 예외를 올리지 않고 경고만 남깁니다.

    Returns:
        저장된 레코드. 실패하면 None.
    """
    try:
        return save(record)
    except RepositoryError as e:
        logger.warning(f"DB Warning: Failed to persist {what}: {e}")
        return None
