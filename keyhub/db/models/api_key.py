"""API Key database model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum
from sqlalchemy.sql import func
from keyhub.db.base import Base
from keyhub.models.domain import KeyType


class APIKey(Base):
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True)
    uid = Column(String(36), unique=True, index=True, nullable=False)
    key_value = Column(String(128), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(
        Enum(KeyType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=KeyType.NORMAL,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    rate_limit = Column(Integer)
    rate_limit_window = Column(Integer)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime)
    token_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())
