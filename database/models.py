# Database Models for the Escrow Ledger Platform
# Core account model; escrow, ledger and webhook tables live in marketplace_models.py

from sqlalchemy import Column, String, DateTime, Enum, Boolean
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.sql import func
from datetime import datetime, timezone
import uuid
import enum

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums
class UserType(str, enum.Enum):
    BRAND = "brand"
    CREATOR = "creator"
    ADMIN = "admin"


# Models
class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    user_type = Column(
        Enum(UserType, values_callable=lambda x: [e.value for e in x], name="usertype"),
        default=UserType.BRAND,
        nullable=False,
    )

    # Stripe references
    stripe_customer_id = Column(String(255), unique=True)
    stripe_account_id = Column(String(255))  # Connect account used for payouts
    stripe_payment_method_id = Column(String(255))

    # Premium subscription flags
    is_premium = Column(Boolean, default=False)
    premium_expires_at = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def is_brand(self) -> bool:
        return self.user_type == UserType.BRAND

    @property
    def is_creator(self) -> bool:
        return self.user_type == UserType.CREATOR

    @property
    def is_admin(self) -> bool:
        return self.user_type == UserType.ADMIN

    def __repr__(self):
        return f"<User {self.email} ({self.user_type})>"
