"""Account model for provisioned credentials."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, text
from sqlalchemy.orm import relationship

from database import Base


ACCOUNT_STATUS_ACTIVE = "active"
ACCOUNT_STATUS_EXPIRED = "expired"
ACCOUNT_STATUS_REVOKED = "revoked"

ACCOUNT_KIND_PAID = "paid"
ACCOUNT_KIND_TRIAL = "trial"


class Account(Base):
    """One credential secret provisioned against a target."""

    __tablename__ = "accounts"
    __table_args__ = (
        # At most one active row may hold a given secret.
        Index(
            "uq_accounts_active_secret",
            "secret",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_accounts_status_expires_at", "status", "expires_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    target_id = Column(String, nullable=False, index=True)
    host = Column(String, nullable=True)
    secret = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False, default=ACCOUNT_KIND_PAID)
    status = Column(String, nullable=False, default=ACCOUNT_STATUS_ACTIVE)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(String, nullable=True)

    user = relationship("User", back_populates="accounts")
