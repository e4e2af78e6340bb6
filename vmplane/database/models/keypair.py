from sqlalchemy import Column, String, Text
from ..database import Base
from .mixins import TimestampMixin

class KeyPair(TimestampMixin, Base):
    """
    인스턴스 접속용 SSH 공개키. 개인키는 생성 시 한 번만 반환하고 저장하지 않습니다.
    """
    __tablename__ = "key_pairs"
    id = Column(String, primary_key=True, index=True)  # key-...
    name = Column(String, nullable=False, index=True)
    public_key = Column(Text, nullable=False)
    fingerprint = Column(String, nullable=False)
    key_type = Column(String, nullable=False, default="ed25519")
