from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cinevault.persistence.types import UTCDateTime


ROLE_STANDARD = "standard"
ROLE_SUPERVISOR = "supervisor"
ROLES = frozenset({ROLE_STANDARD, ROLE_SUPERVISOR})

PLAN_FREE = "free"
PLAN_BASIC = "basic"
PLAN_PREMIUM = "premium"
PLANS = frozenset({PLAN_FREE, PLAN_BASIC, PLAN_PREMIUM})
PAID_PLANS = frozenset({PLAN_BASIC, PLAN_PREMIUM})

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"
SUBSCRIPTION_STATUSES = frozenset({STATUS_PENDING, STATUS_ACTIVE, STATUS_CANCELED, STATUS_PAST_DUE})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('standard', 'supervisor')", name="ck_users_role"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Stored lower-cased so the unique index is case-insensitive in effect.
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    first_name: Mapped[str] = mapped_column(String)
    last_name: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default=ROLE_STANDARD, nullable=False)
    # E.164 formatted, validated by the identity service before insert.
    mobile_number: Mapped[str] = mapped_column(String, unique=True)
    # One push endpoint belongs to at most one identity; stealing clears the old owner first.
    push_token: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    # Tokens carrying a lower epoch are rejected; bumped by sign-out-everywhere only.
    token_epoch: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"
    __table_args__ = (
        Index("ix_revoked_tokens_expires_at", "expires_at"),
    )

    # The jti primary key is the concurrency guard for duplicate sign-outs.
    jti: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    # Mirrors the token exp; past this point the record is inert and reclaimable.
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)
    revoked_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("plan IN ('free', 'basic', 'premium')", name="ck_subscriptions_plan"),
        CheckConstraint(
            "status IN ('pending', 'active', 'canceled', 'past_due')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint(
            "(plan = 'free' AND end_date IS NULL) OR (plan <> 'free' AND end_date IS NOT NULL)",
            name="ck_subscriptions_end_date",
        ),
        CheckConstraint(
            "plan = 'free' OR status = 'pending' OR "
            "(billing_customer_ref IS NOT NULL AND billing_subscription_ref IS NOT NULL)",
            name="ck_subscriptions_billing_refs",
        ),
        CheckConstraint(
            "status <> 'canceled' OR activated_at IS NOT NULL",
            name="ck_subscriptions_canceled_activated",
        ),
        Index("ix_subscriptions_billing_customer_ref", "billing_customer_ref"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), unique=True
    )
    plan: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_customer_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_subscription_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    # Set when a payment succeeds; rows that were never paid grant no access.
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        Index("ix_processed_webhook_events_received_at", "received_at"),
    )

    # Gateway event ids are globally unique; the primary key dedupes redeliveries.
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class SentNotification(Base):
    __tablename__ = "sent_notifications"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "kind",
            "channel",
            "reference",
            name="uq_sent_notifications_user_kind_channel_reference",
        ),
        CheckConstraint("channel IN ('push', 'whatsapp')", name="ck_sent_notifications_channel"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    kind: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    reference: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="sent")
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class Movie(Base):
    __tablename__ = "movies"
    __table_args__ = (
        CheckConstraint("rating >= 0 AND rating <= 10", name="ck_movies_rating"),
        CheckConstraint("duration_minutes > 0", name="ck_movies_duration"),
        Index("ix_movies_genre", "genre"),
        Index("ix_movies_premium", "premium"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String, index=True)
    genre: Mapped[str] = mapped_column(String)
    release_year: Mapped[int] = mapped_column(Integer)
    rating: Mapped[float] = mapped_column(Float)
    director: Mapped[str] = mapped_column(String)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    main_lead: Mapped[str] = mapped_column(String)
    streaming_platform: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)
