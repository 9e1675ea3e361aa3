import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from voucher_market.core.database import Base
from voucher_market.core.timeutils import utcnow
from voucher_market.models._ids import new_id

PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    deal_id = Column(String(36), ForeignKey("deals.id"), index=True, nullable=False)
    venue_id = Column(String(36), ForeignKey("venues.id"), index=True, nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ZAR")
    payment_method = Column(String(20), nullable=False, default="direct")  # direct | payfast
    external_payment_id = Column(String(64), unique=True, nullable=True)
    payment_data = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    voucher_ids = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)

    status = Column(String(20), index=True, nullable=False, default="pending")  # pending / completed / failed / refunded
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, index=True, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    vouchers = relationship("Voucher", back_populates="payment")
    deal = relationship("Deal")
    venue = relationship("Venue")
    user = relationship("User")
