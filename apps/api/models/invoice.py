"""Invoice model for balance top-up attempts."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


INVOICE_STATUS_PENDING = "pending"
INVOICE_STATUS_PAID = "paid"


class Invoice(Base):
    """Funding attempt keyed by the gateway-facing order id."""

    __tablename__ = "invoices"

    order_id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    total_payment = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default=INVOICE_STATUS_PENDING, index=True)
    payment_reference = Column(String, nullable=True)
    payment_expires_at = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    paid_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="invoices")
