from sqlalchemy import Column, Integer, String
from ..database import Base
from .mixins import TimestampMixin

class Instance(TimestampMixin, Base):
    """
    사용자가 생성하고 관리하는 가상 머신(인스턴스)을 나타냅니다.
    하이퍼바이저의 도메인 하나와 부트 볼륨 하나에 대응합니다.
    AWS의 'EC2 Instance'에 해당합니다.
    """
    __tablename__ = "instances"
    id = Column(String, primary_key=True, index=True)  # i-...
    name = Column(String, nullable=False, index=True)
    state = Column(String, nullable=False)
    image_id = Column(String)
    volume_id = Column(String)
    memory_mb = Column(Integer, nullable=False)
    vcpus = Column(Integer, nullable=False)
    node_name = Column(String, nullable=False, default="local")
    domain_uuid = Column(String)
    domain_name = Column(String)
    key_name = Column(String)
