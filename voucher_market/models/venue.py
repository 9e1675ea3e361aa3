import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from voucher_market.core.database import Base
from voucher_market.core.timeutils import utcnow
from voucher_market.models._ids import new_id


class Venue(Base):
    __tablename__ = "venues"

    id = Column(String(36), primary_key=True, default=new_id)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    address = Column(Text, nullable=False)
    city = Column(String(100), index=True, nullable=False)
    postal_code = Column(String(10), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    website = Column(String(500), nullable=True)
    logo_url = Column(String(500), nullable=True)
    cover_image_url = Column(String(500), nullable=True)
    opening_hours = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    requires_age_verification = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    deals = relationship("Deal", back_populates="venue")
    profiles = relationship("VenueProfile", back_populates="venue", cascade="all, delete-orphan")


class VenueProfile(Base):
    """Grants a venue-role user access to manage one venue."""

    __tablename__ = "venue_profiles"
    __table_args__ = (UniqueConstraint("user_id", "venue_id", name="uq_venue_profiles_user_venue"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    venue_id = Column(String(36), ForeignKey("venues.id"), index=True, nullable=False)
    permissions = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="venue_profiles")
    venue = relationship("Venue", back_populates="profiles")
