from sqlalchemy import Boolean, Column, Date, DateTime, String
from sqlalchemy.orm import relationship

from voucher_market.core.database import Base
from voucher_market.core.timeutils import utcnow
from voucher_market.models._ids import new_id

USER_ROLES = ("customer", "venue", "admin")


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)

    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    date_of_birth = Column(Date, nullable=True)  # required only for age-restricted deals

    role = Column(String(20), default="customer", nullable=False)  # customer | venue | admin
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    vouchers = relationship("Voucher", back_populates="user", foreign_keys="Voucher.user_id")
    venue_profiles = relationship("VenueProfile", back_populates="user", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
