from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from staff_auth.db.base import Base


class SecondFactorConfig(Base):
    """TOTP enrollment for an identity; at most one row per identity."""

    __tablename__ = "second_factor_configs"

    identity_id = Column(
        UUID(as_uuid=True), ForeignKey("identities.id", ondelete="CASCADE"), primary_key=True
    )
    secret_encrypted = Column(String(255), nullable=False)
    enabled = Column(Boolean, nullable=False, server_default="false")
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    identity = relationship("Identity", back_populates="second_factor")
