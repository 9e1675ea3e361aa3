from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from voucher_market.core.database import Base
from voucher_market.core.timeutils import utcnow
from voucher_market.models._ids import new_id

VOUCHER_STATUSES = ("active", "redeemed", "expired", "refunded")


class Voucher(Base):
    __tablename__ = "vouchers"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    deal_id = Column(String(36), ForeignKey("deals.id"), index=True, nullable=False)
    venue_id = Column(String(36), ForeignKey("venues.id"), index=True, nullable=False)
    payment_id = Column(String(36), ForeignKey("payments.id"), index=True, nullable=True)

    voucher_code = Column(String(32), unique=True, index=True, nullable=False)
    qr_code_data = Column(Text, nullable=False)
    purchase_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    status = Column(String(20), index=True, default="active", nullable=False)  # active / redeemed / expired / refunded
    expires_at = Column(DateTime, index=True, nullable=False)
    redeemed_at = Column(DateTime, nullable=True)
    redeemed_by = Column(String(36), ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="vouchers", foreign_keys=[user_id])
    redeemer = relationship("User", foreign_keys=[redeemed_by])
    deal = relationship("Deal", back_populates="vouchers")
    venue = relationship("Venue")
    payment = relationship("Payment", back_populates="vouchers")
