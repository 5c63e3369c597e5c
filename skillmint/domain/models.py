from __future__ import annotations

import time
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite test databases portable.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# Money is stored as decimal(10,4) and never as float.
Money = Numeric(10, 4, asdecimal=True)

PACKAGE_STATUSES = ("active", "archived", "banned")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    display_name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Subscription tier drives install gates and metering.
    tier: Mapped[str] = mapped_column(String, default="free", nullable=False)
    # Persist role as a plain string; only "user" and "admin" are recognized.
    role: Mapped[str] = mapped_column(String, default="user", nullable=False)
    # Gate access for disabled users without deleting historical keys.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_used_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    revoked_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class Package(Base):
    __tablename__ = "packages"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_packages_slug"),
        Index("ix_packages_status_install_count", "status", "install_count"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Public, globally unique identifier used in URLs.
    slug: Mapped[str] = mapped_column(String, nullable=False)
    version: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    readme: Mapped[str | None] = mapped_column(Text, nullable=True)
    author_user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    author_name: Mapped[str] = mapped_column(String, nullable=False)
    license: Mapped[str] = mapped_column(String, default="open-source", nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    # 0..3, compared against the caller's tier rank.
    required_tier: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    category: Mapped[str] = mapped_column(String, default="other", nullable=False)
    maturity: Mapped[str] = mapped_column(String, default="experimental", nullable=False)
    tags: Mapped[list[str]] = mapped_column(JsonType, default=list)
    icon: Mapped[str | None] = mapped_column(String, nullable=True)
    repository_url: Mapped[str | None] = mapped_column(String, nullable=True)
    homepage_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    # Only ever incremented by successful admissions.
    install_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2, asdecimal=True), default=Decimal("0"), nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, onupdate=now_ms)
    released_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class PackageTag(Base):
    __tablename__ = "package_tags"

    # Exact-match tag lookups without dialect-specific array operators.
    package_id: Mapped[str] = mapped_column(
        String, ForeignKey("packages.id", ondelete="CASCADE"), primary_key=True
    )
    tag: Mapped[str] = mapped_column(String, primary_key=True, index=True)


class Mint(Base):
    __tablename__ = "mints"
    __table_args__ = (UniqueConstraint("package_id", name="uq_mints_package"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    package_id: Mapped[str] = mapped_column(String, ForeignKey("packages.id", ondelete="CASCADE"))
    rarity: Mapped[str] = mapped_column(String, default="common", nullable=False)
    # Null means unlimited editions.
    max_editions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Never exceeds max_editions; guarded by a conditional UPDATE.
    minted_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    creator_id: Mapped[str] = mapped_column(String, nullable=False)
    creator_royalty_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2, asdecimal=True), default=Decimal("70.00"), nullable=False
    )
    graduation_certificate: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    origin: Mapped[str] = mapped_column(String, default="manual", nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, onupdate=now_ms)


class Installation(Base):
    __tablename__ = "installations"
    __table_args__ = (
        # At most one active install per (user, package); failed and uninstalled rows are history.
        Index(
            "uq_installations_active_user_package",
            "user_id",
            "package_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_installations_user_agent", "user_id", "agent_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    package_id: Mapped[str] = mapped_column(String, ForeignKey("packages.id", ondelete="CASCADE"), index=True)
    package_version: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    agent_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="installing", nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    configuration: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    installed_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    uninstalled_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class RoyaltyLedgerEntry(Base):
    __tablename__ = "royalty_ledger"

    # Append-only; rows are never updated after insert.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    package_id: Mapped[str] = mapped_column(String, index=True)
    creator_id: Mapped[str] = mapped_column(String, index=True)
    buyer_id: Mapped[str] = mapped_column(String)
    installation_id: Mapped[str] = mapped_column(String)
    gross_amount_usd: Mapped[Decimal] = mapped_column(Money, nullable=False)
    royalty_amount_usd: Mapped[Decimal] = mapped_column(Money, nullable=False)
    royalty_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2, asdecimal=True), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, index=True)


class EncryptedKnowledge(Base):
    __tablename__ = "encrypted_knowledge"
    __table_args__ = (
        Index(
            "uq_encrypted_knowledge_active_package",
            "package_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    package_id: Mapped[str] = mapped_column(String, ForeignKey("packages.id", ondelete="CASCADE"), index=True)
    # Base64 envelope of the DEK under the process KEK.
    wrapped_dek: Mapped[str] = mapped_column(Text, nullable=False)
    # iv(12) | tag(16) | ciphertext under the DEK.
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_user_status", "user_id", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"))
    tier: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    calls_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # 0 means unlimited.
    calls_limit: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    period_start: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    period_end: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, onupdate=now_ms)


class UsageLedgerEntry(Base):
    __tablename__ = "usage_ledger"

    # Append-only; one row per completed invocation including zero-cost calls.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    package_id: Mapped[str] = mapped_column(String, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    is_overage: Mapped[bool] = mapped_column(Boolean, nullable=False)
    cost_usd: Mapped[Decimal] = mapped_column(Money, nullable=False)
    creator_royalty_usd: Mapped[Decimal] = mapped_column(Money, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class InvocationLogEntry(Base):
    __tablename__ = "invocation_logs"

    # Serial sequence gives the hash chain a strict total order when created_at ties.
    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    id: Mapped[str] = mapped_column(String, unique=True, default=new_id)
    package_id: Mapped[str] = mapped_column(String, index=True)
    caller_id: Mapped[str] = mapped_column(String)
    mode: Mapped[str] = mapped_column(String)
    inference_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    conclusion_hash: Mapped[str] = mapped_column(String, nullable=False)
    prev_hash: Mapped[str] = mapped_column(String, nullable=False)
    event_hash: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[int] = mapped_column(BigInteger, index=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist a stable event taxonomy for investigation queries.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized for flexible investigation.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
