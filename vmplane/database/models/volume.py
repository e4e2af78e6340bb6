from sqlalchemy import BigInteger, Column, Integer, String
from ..database import Base
from .mixins import TimestampMixin

class Volume(TimestampMixin, Base):
    """
    스토리지 풀 안의 블록 디바이스 파일(<id>.<format>)을 나타냅니다.
    state는 캐시일 뿐이며, 실제 사용 여부는 도메인 디스크 목록으로 판단합니다.
    AWS의 'EBS Volume'에 해당합니다.
    """
    __tablename__ = "volumes"
    id = Column(String, primary_key=True, index=True)  # vol-...
    pool = Column(String, nullable=False)
    path = Column(String, nullable=False)
    size_gb = Column(Integer, nullable=False)  # 요청된 크기
    actual_size_bytes = Column(BigInteger)  # 하이퍼바이저가 보고한 크기
    format = Column(String, nullable=False, default="qcow2")
    state = Column(String, nullable=False, default="available")
    node_name = Column(String, nullable=False, default="local")
    source_image_id = Column(String)
    source_snapshot_id = Column(String)
