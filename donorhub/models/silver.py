"""
Silver layer: per-source typed entity tables.

Every row belongs to exactly one source system and is keyed by that system's
own identifier. Transaction entities reference the *source* contact id; the
hop to a master identity only happens in the serving views.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from .base import BaseModel, db

Money = db.Numeric(12, 2, asdecimal=False)


class SilverRecordMixin:
    """Natural key and provenance columns shared by silver tables."""

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(db.String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(db.String(256), nullable=False)
    lineage_id: Mapped[str | None] = mapped_column(db.String(36), nullable=True, index=True)
    raw_record_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    @declared_attr.directive
    def __table_args__(cls):
        return (
            UniqueConstraint("source_system", "source_id", name=f"uq_{cls.__tablename__}_natural_key"),
        )


class SilverTransactionMixin(SilverRecordMixin):
    """Silver entity owned by a source contact."""

    contact_source_id: Mapped[str | None] = mapped_column(db.String(256), nullable=True)

    @declared_attr.directive
    def __table_args__(cls):
        return (
            UniqueConstraint("source_system", "source_id", name=f"uq_{cls.__tablename__}_natural_key"),
            Index(f"idx_{cls.__tablename__}_contact_ref", "source_system", "contact_source_id"),
        )


class Contact(SilverRecordMixin, BaseModel):
    """A person or organization record from exactly one source system."""

    __tablename__ = "silver_contacts"

    first_name: Mapped[str | None] = mapped_column(db.String(128))
    last_name: Mapped[str | None] = mapped_column(db.String(128))
    display_name: Mapped[str | None] = mapped_column(db.String(256))
    email_primary: Mapped[str | None] = mapped_column(db.String(256), index=True)
    email_2: Mapped[str | None] = mapped_column(db.String(256))
    email_3: Mapped[str | None] = mapped_column(db.String(256))
    phone_primary: Mapped[str | None] = mapped_column(db.String(32))
    phone_2: Mapped[str | None] = mapped_column(db.String(32))
    phone_3: Mapped[str | None] = mapped_column(db.String(32))
    address_line1: Mapped[str | None] = mapped_column(db.String(256))
    address_line2: Mapped[str | None] = mapped_column(db.String(256))
    city: Mapped[str | None] = mapped_column(db.String(128))
    state: Mapped[str | None] = mapped_column(db.String(64))
    postal_code: Mapped[str | None] = mapped_column(db.String(20))
    country: Mapped[str | None] = mapped_column(db.String(64))
    organization_name: Mapped[str | None] = mapped_column(db.String(256))
    household_name: Mapped[str | None] = mapped_column(db.String(256))
    date_of_birth: Mapped[date | None] = mapped_column(db.Date)
    gender: Mapped[str | None] = mapped_column(db.String(16))
    spouse_name: Mapped[str | None] = mapped_column(db.String(256))
    source_created_at: Mapped[datetime | None] = mapped_column(db.DateTime)
    source_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime)

    def emails(self) -> list[str]:
        return [value for value in (self.email_primary, self.email_2, self.email_3) if value]

    def phones(self) -> list[str]:
        return [value for value in (self.phone_primary, self.phone_2, self.phone_3) if value]

    def __repr__(self) -> str:
        return f"<Contact {self.source_system}:{self.source_id}>"


class Donation(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_donations"

    amount: Mapped[float | None] = mapped_column(Money)
    currency: Mapped[str | None] = mapped_column(db.String(8))
    donated_at: Mapped[datetime | None] = mapped_column(db.DateTime)
    payment_method: Mapped[str | None] = mapped_column(db.String(64))
    fund: Mapped[str | None] = mapped_column(db.String(256))
    appeal: Mapped[str | None] = mapped_column(db.String(256))
    designation: Mapped[str | None] = mapped_column(db.String(256))


class Invoice(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_invoices"

    invoice_number: Mapped[str | None] = mapped_column(db.String(64))
    total: Mapped[float | None] = mapped_column(Money)
    pay_status: Mapped[str | None] = mapped_column(db.String(32))
    issued_at: Mapped[datetime | None] = mapped_column(db.DateTime)


class Payment(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_payments"

    amount: Mapped[float | None] = mapped_column(Money)
    paid_at: Mapped[datetime | None] = mapped_column(db.DateTime)
    payment_method: Mapped[str | None] = mapped_column(db.String(64))
    invoice_source_id: Mapped[str | None] = mapped_column(db.String(256))


class Order(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_orders"

    order_number: Mapped[str | None] = mapped_column(db.String(64))
    total_amount: Mapped[float | None] = mapped_column(Money)
    ordered_at: Mapped[datetime | None] = mapped_column(db.DateTime)
    order_status: Mapped[str | None] = mapped_column(db.String(32))


class Subscription(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_subscriptions"

    product_source_id: Mapped[str | None] = mapped_column(db.String(256))
    amount: Mapped[float | None] = mapped_column(Money)
    billing_cycle: Mapped[str | None] = mapped_column(db.String(32))
    status: Mapped[str | None] = mapped_column(db.String(32))
    start_date: Mapped[datetime | None] = mapped_column(db.DateTime)
    next_bill_date: Mapped[datetime | None] = mapped_column(db.DateTime)
    reason_stopped: Mapped[str | None] = mapped_column(db.String(256))


class Product(SilverRecordMixin, BaseModel):
    __tablename__ = "silver_products"

    name: Mapped[str | None] = mapped_column(db.String(256))
    sku: Mapped[str | None] = mapped_column(db.String(64))
    price: Mapped[float | None] = mapped_column(Money)


class Note(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_notes"

    subject: Mapped[str | None] = mapped_column(db.String(512))
    body: Mapped[str | None] = mapped_column(db.Text)
    author: Mapped[str | None] = mapped_column(db.String(128))
    noted_at: Mapped[datetime | None] = mapped_column(db.DateTime)


class Communication(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_communications"

    channel: Mapped[str | None] = mapped_column(db.String(32))
    direction: Mapped[str | None] = mapped_column(db.String(16))
    subject: Mapped[str | None] = mapped_column(db.String(512))
    sent_at: Mapped[datetime | None] = mapped_column(db.DateTime)


class Activity(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_activities"

    activity_type: Mapped[str | None] = mapped_column(db.String(64))
    subject: Mapped[str | None] = mapped_column(db.String(512))
    body: Mapped[str | None] = mapped_column(db.Text)
    occurred_at: Mapped[datetime | None] = mapped_column(db.DateTime)


class ContactTag(SilverTransactionMixin, BaseModel):
    __tablename__ = "silver_contact_tags"

    tag_value: Mapped[str | None] = mapped_column(db.String(512))
    tag_group: Mapped[str | None] = mapped_column(db.String(256))
    applied_at: Mapped[datetime | None] = mapped_column(db.DateTime)


TRANSACTION_MODELS: tuple[type[SilverTransactionMixin], ...] = (
    Donation,
    Invoice,
    Payment,
    Order,
    Subscription,
    Note,
    Communication,
    Activity,
    ContactTag,
)
