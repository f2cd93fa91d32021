"""Subscription and payment history database models"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, Enum, ForeignKey
from sqlalchemy.sql import func
from keyhub.db.base import Base
from keyhub.models.domain import SubscriptionStatus


class SubscriptionRecord(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    api_key_uid = Column(String(36), ForeignKey("api_keys.uid", ondelete="CASCADE"),
                         unique=True, index=True, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    status = Column(
        Enum(SubscriptionStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    price = Column(Float, default=0.0, nullable=False)
    currency = Column(String(8), default="BRL", nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    renewal_date = Column(DateTime)
    auto_renew = Column(Boolean, default=False, nullable=False)
    duration_days = Column(Integer, default=30, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())


class PaymentRecord(Base):
    __tablename__ = "payment_history"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"),
                             index=True, nullable=False)
    api_key_uid = Column(String(36), index=True, nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False)
    payment_date = Column(DateTime, nullable=False, index=True)
    reference = Column(String(128), nullable=False)
    method = Column(String(32), default="manual", nullable=False)
    status = Column(String(32), default="completed", nullable=False)
