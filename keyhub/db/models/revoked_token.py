"""Token revocation set database model"""
from sqlalchemy import Column, String, DateTime
from keyhub.db.base import Base


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    token = Column(String(2048), primary_key=True)
    expires_at = Column(DateTime, nullable=False, index=True)
