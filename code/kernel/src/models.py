"""
PuzzleGuard Database Models
所有需要持久化的实体的SQLAlchemy模型定义

Entities are stored as versioned JSON payloads; the columns that lookups and
rate-limit counts filter on are lifted out and indexed.
"""

from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RecordModel(Base):
    """信任与安全记录表（检测、案件、申诉、举报、投票、处罚、审核员、指标等）"""
    __tablename__ = "trust_safety_records"

    collection = Column(String(64), primary_key=True)
    record_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=True, index=True)
    status = Column(String(32), nullable=True, index=True)
    related_id = Column(String(64), nullable=True, index=True)
    schema_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    payload = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_records_collection_user", "collection", "user_id"),
        Index("ix_records_collection_status", "collection", "status"),
        Index("ix_records_collection_related", "collection", "related_id"),
    )
