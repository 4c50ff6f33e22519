from sqlalchemy import Column, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, UTC
import enum
import uuid
from finsync.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns round-trip."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class ProviderKind(str, enum.Enum):
    TOKEN = "token"
    BROWSER = "browser"


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    AUTH_REQUIRED = "authRequired"


class SyncStatus(str, enum.Enum):
    ACTIVE = "active"
    SYNCING = "syncing"
    ERROR = "error"
    AUTH_REQUIRED = "authRequired"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    connections = relationship("Connection", back_populates="user")
    accounts = relationship("Account", back_populates="user")


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "external_item_id", name="uq_connection_item"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(SQLEnum(ProviderKind), nullable=False)

    # Institution metadata supplied at link time
    institution_id = Column(String(255), nullable=True)
    institution_name = Column(String(255), nullable=True)

    # Serialized vault envelope (legacy rows may still hold plaintext)
    encrypted_credential = Column(Text, nullable=False)
    external_item_id = Column(String(255), nullable=False)

    status = Column(SQLEnum(ConnectionStatus), nullable=False, default=ConnectionStatus.ACTIVE)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="connections")
    accounts = relationship("Account", back_populates="connection")


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True, default=new_id)
    connection_id = Column(String(64), ForeignKey("connections.id"), nullable=False, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    external_account_id = Column(String(255), nullable=True)

    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=True)
    balance = Column(DECIMAL(15, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    # Written only through SyncStateMachine
    sync_status = Column(SQLEnum(SyncStatus), nullable=False, default=SyncStatus.ACTIVE)
    sync_error = Column(Text, nullable=True)
    sync_error_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="accounts")
    connection = relationship("Connection", back_populates="accounts")


class Transaction(Base):
    __tablename__ = "transactions"

    # Dedup key, unique per user
    user_id = Column(String(64), ForeignKey("users.id"), primary_key=True)
    id = Column(String(255), primary_key=True)

    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    connection_id = Column(String(64), ForeignKey("connections.id"), nullable=False)

    date = Column(Date, nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    description = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    merchant_name = Column(String(255), nullable=True)
    pending = Column(Boolean, default=False)
    provider_tx_id = Column(String(255), nullable=True)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    account = relationship("Account")
