import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    # Stored as naive UTC so SQLite and Postgres compare the same way.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GmailAccountRow(Base):
    __tablename__ = "gmail_accounts"
    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(320), nullable=False, unique=True, index=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expiry = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, nullable=False)


class AgentSettingsRow(Base):
    __tablename__ = "agent_settings"
    account_id = Column(
        String(36),
        ForeignKey("gmail_accounts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    enabled = Column(Boolean, default=True, nullable=False)
    run_mode = Column(String(16), default="periodic", nullable=False)
    interval_minutes = Column(Integer, default=60, nullable=False)
    timezone = Column(String(64), nullable=True)
    window_start = Column(String(8), nullable=True)
    window_end = Column(String(8), nullable=True)
    last_run_at = Column(DateTime, nullable=True)


class TriageRuleRow(Base):
    __tablename__ = "triage_rules"
    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(
        String(36),
        ForeignKey("gmail_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_type = Column(String(32), nullable=False)
    pattern = Column(String(512), nullable=False)
    action = Column(String(16), default="skip", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=_now, nullable=False)


class EmailLogRow(Base):
    __tablename__ = "email_logs"
    __table_args__ = (
        UniqueConstraint("account_id", "message_id", name="uq_email_logs_account_message"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(
        String(36),
        ForeignKey("gmail_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    message_id = Column(String(255), nullable=False, index=True)
    thread_id = Column(String(255), nullable=True)
    subject = Column(Text, default="", nullable=False)
    from_address = Column(Text, default="", nullable=False)
    summary = Column(Text, default="", nullable=False)
    needs_response = Column(Boolean, default=False, nullable=False)
    priority = Column(String(16), default="normal", nullable=False)
    draft_created = Column(Boolean, default=False, nullable=False)
    outcome = Column(String(32), nullable=False, index=True)
    rule_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False, index=True)


class RunHistoryRow(Base):
    __tablename__ = "agent_run_history"
    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(
        String(36),
        ForeignKey("gmail_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    triggered_by = Column(String(32), default="cron", nullable=False)
    status = Column(String(16), default="running", nullable=False)
    lookback_days = Column(Integer, nullable=True)
    started_at = Column(DateTime, default=_now, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    http_status = Column(Integer, nullable=True)
    error_text = Column(Text, nullable=True)


def create_db_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
