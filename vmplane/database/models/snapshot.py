from sqlalchemy import Column, Integer, String
from ..database import Base
from .mixins import TimestampMixin

class Snapshot(TimestampMixin, Base):
    """
    특정 시점의 볼륨 내용을 독립된 qcow2 파일로 보관합니다.
    completed 상태의 스냅샷만 새 볼륨이나 복사본의 원본이 될 수 있습니다.
    """
    __tablename__ = "snapshots"
    id = Column(String, primary_key=True, index=True)  # snap-...
    volume_id = Column(String, nullable=False, index=True)
    state = Column(String, nullable=False, default="pending")
    size_gb = Column(Integer, nullable=False)
    pool = Column(String, nullable=False)
    path = Column(String)
    description = Column(String)
