from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from voucher_market.core.database import Base
from voucher_market.core.timeutils import utcnow
from voucher_market.models._ids import new_id

DEAL_STATUSES = ("draft", "active", "paused", "ended")


class Deal(Base):
    __tablename__ = "deals"
    __table_args__ = (
        CheckConstraint("vouchers_issued <= max_vouchers", name="ck_deals_capacity"),
        CheckConstraint("deal_price < original_price", name="ck_deals_price"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    venue_id = Column(String(36), ForeignKey("venues.id"), index=True, nullable=False)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    terms_and_conditions = Column(Text, nullable=False, default="")
    deal_image_url = Column(String(500), nullable=True)

    original_price = Column(Numeric(10, 2), nullable=False)
    deal_price = Column(Numeric(10, 2), nullable=False)

    max_vouchers = Column(Integer, nullable=False, default=1000)
    max_per_customer = Column(Integer, nullable=False, default=10)
    # Mirrors the number of voucher rows ever issued; only reserve_capacity moves it.
    vouchers_issued = Column(Integer, nullable=False, default=0)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    requires_age_verification = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), index=True, default="draft", nullable=False)  # draft / active / paused / ended

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    venue = relationship("Venue", back_populates="deals")
    vouchers = relationship("Voucher", back_populates="deal")

    @property
    def savings_amount(self):
        return self.original_price - self.deal_price

    @property
    def savings_percentage(self) -> float:
        if not self.original_price:
            return 0.0
        return round(float(self.savings_amount / self.original_price * 100), 2)

    @property
    def vouchers_remaining(self) -> int:
        return max(0, int(self.max_vouchers or 0) - int(self.vouchers_issued or 0))
