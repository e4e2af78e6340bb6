from sqlalchemy import Column, Integer, String
from ..database import Base
from .mixins import TimestampMixin

class Image(TimestampMixin, Base):
    """
    VM을 생성할 때 사용하는 부팅 가능한 디스크 템플릿을 정의합니다.
    (예: 'ubuntu-jammy').
    AWS의 'AMI'와 동일한 개념입니다. 등록 후에는 변경하지 않습니다.
    """
    __tablename__ = "images"
    id = Column(String, primary_key=True, index=True)  # ami-... 또는 설정된 이름
    name = Column(String, nullable=False)
    pool = Column(String, nullable=False)
    path = Column(String, nullable=False)
    size_gb = Column(Integer, nullable=False)
    format = Column(String, nullable=False, default="qcow2")
    description = Column(String)
