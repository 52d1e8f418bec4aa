import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, text

from ride_payments.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


class User(Base):
    """Platform user row; only the columns this service reads or writes."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)          # auth subject (JWT "sub")
    email = Column(String, nullable=True)
    stripe_connect_account_id = Column(String, unique=True, nullable=True)


class PayoutMethod(Base):
    __tablename__ = "payout_methods"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    payout_type = Column(String, nullable=False)   # bank_transfer | paypal
    account_holder_name = Column(String, nullable=True)
    institution_number = Column(String, nullable=True)
    transit_number = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    paypal_email = Column(String, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        # At most one default per user
        Index(
            "payout_methods_one_default_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_default"),
            postgresql_where=text("is_default"),
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "payout_type": self.payout_type,
            "account_holder_name": self.account_holder_name,
            "institution_number": self.institution_number,
            "transit_number": self.transit_number,
            "account_number": self.account_number,
            "paypal_email": self.paypal_email,
            "is_default": self.is_default,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class PayoutRequest(Base):
    __tablename__ = "payout_requests"

    id = Column(String, primary_key=True, default=new_id)
    driver_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)         # dollars
    status = Column(String, nullable=False, default="pending")  # pending | approved | processing | cancelled | rejected | paid
    payout_id = Column(String, nullable=True)      # Stripe Payout ID
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    arrival_date = Column(DateTime(timezone=True), nullable=True)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, nullable=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)         # dollars
    currency = Column(String, nullable=False, default="cad")
    status = Column(String, nullable=False, default="pending", index=True)
    payment_method = Column(String, nullable=False)  # stripe | paypal
    payment_method_id = Column(String, nullable=True)
    payment_intent_id = Column(String, nullable=True, index=True)  # Stripe PaymentIntent ID
    authorization_id = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True, index=True)     # PayPal order ID
    refund_id = Column(String, nullable=True)
    refund_reason = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_method_id": self.payment_method_id,
            "payment_intent_id": self.payment_intent_id,
            "authorization_id": self.authorization_id,
            "transaction_id": self.transaction_id,
            "refund_id": self.refund_id,
            "refund_reason": self.refund_reason,
            "expires_at": self.expires_at,
            "captured_at": self.captured_at,
            "refunded_at": self.refunded_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
