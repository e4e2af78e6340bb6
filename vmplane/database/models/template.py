from sqlalchemy import JSON, BigInteger, Column, String
from ..database import Base
from .mixins import TimestampMixin

class Template(TimestampMixin, Base):
    """
    노드의 스토리지 풀 '_templates_' 디렉터리에 놓인 기반 디스크와 그 메타데이터.
    URL에서 내려받아 등록하거나, 이미 존재하는 파일로 즉시 등록할 수 있습니다.
    """
    __tablename__ = "templates"
    id = Column(String, primary_key=True, index=True)  # tmpl-...
    name = Column(String, nullable=False)
    description = Column(String)
    node_name = Column(String, nullable=False, default="local")
    pool_name = Column(String, nullable=False)
    volume_name = Column(String, nullable=False)
    path = Column(String, nullable=False)
    format = Column(String)
    size_bytes = Column(BigInteger)
    source_url = Column(String)
    os = Column(JSON)
    features = Column(JSON)
    tags = Column(JSON)
