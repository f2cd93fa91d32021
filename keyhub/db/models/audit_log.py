"""Audit and usage log database models"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text
from sqlalchemy.sql import func
from keyhub.db.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    # Nullable so entries about deleted keys survive the cascade
    api_key_uid = Column(String(36), index=True, nullable=True)
    action = Column(String(64), nullable=False, index=True)
    details = Column(JSON)
    ip_address = Column(String(64))
    user_agent = Column(Text)
    created_at = Column(DateTime, server_default=func.now(), index=True)


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    api_key_uid = Column(String(36), index=True, nullable=False)
    endpoint = Column(String(255), nullable=False)
    method = Column(String(16), nullable=False)
    status_code = Column(Integer, default=200)
    ip_address = Column(String(64))
    created_at = Column(DateTime, server_default=func.now(), index=True)
