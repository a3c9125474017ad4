from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func

from ..core.db import Base


class Upload(Base):
    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True, index=True)
    table = Column(String(100), unique=True, nullable=False)
    description = Column(String, nullable=True)

    # [{"name": "amount", "type": "decimal"}, ...], written by ingestion only
    columns = Column(JSON, nullable=False, default=list)

    # Plain back-reference, users live outside this service
    creator_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "table": self.table,
            "description": self.description,
            "columns": self.columns,
            "creator_id": self.creator_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
