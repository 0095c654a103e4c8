import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column, relationship
from sqlalchemy import Uuid


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("provider", "field_name", name="uq_provider_credentials_provider_field"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(50), index=True)
    field_name: Mapped[str] = mapped_column(String(100))
    encrypted_value: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    last_validated_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class SshKey(Base):
    __tablename__ = "ssh_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(150))
    public_key: Mapped[Optional[str]] = mapped_column(Text)
    private_key_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class Machine(Base):
    __tablename__ = "machines"
    __table_args__ = (
        UniqueConstraint("provider", "client_request_id", name="uq_machines_provider_client_request"),
        Index("ix_machines_provider_status", "provider", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(50))
    provider_instance_id: Mapped[Optional[str]] = mapped_column(String(255))
    client_request_id: Mapped[str] = mapped_column(String(64))
    region: Mapped[str] = mapped_column(String(64))
    size: Mapped[str] = mapped_column(String(20))
    nickname: Mapped[Optional[str]] = mapped_column(String(150))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    ssh_key_ref: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("ssh_keys.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), default="creating")
    bot_status: Mapped[str] = mapped_column(String(20), default="not_deployed")
    monthly_cost: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    expected_ready_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    uptime_seconds: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    last_health_check: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    destroyed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))

    deployments: Mapped[List["Deployment"]] = relationship(
        back_populates="machine", cascade="all, delete-orphan"
    )


class Deployment(Base):
    __tablename__ = "deployments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    machine_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("machines.id", ondelete="CASCADE"), index=True)
    server_id: Mapped[str] = mapped_column(String(255), unique=True)
    bot_status: Mapped[str] = mapped_column(String(20), default="not_deployed")
    ssh_key_ref: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("ssh_keys.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)

    machine: Mapped["Machine"] = relationship(back_populates="deployments")


class TradingConfig(Base):
    __tablename__ = "trading_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    bot_status: Mapped[str] = mapped_column(String(20), default="stopped")
    trading_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    trading_mode: Mapped[str] = mapped_column(String(20), default="spot")
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    global_kill_switch_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    max_position_size: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    max_daily_loss: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    max_drawdown_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4))
    max_slippage_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4))
    min_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class ExchangeConnection(Base):
    __tablename__ = "exchange_connections"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    exchange_name: Mapped[str] = mapped_column(String(50), unique=True)
    api_key_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    api_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    api_passphrase_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    balance_usdt: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    last_ping_ms: Mapped[Optional[int]] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class FailoverConfig(Base):
    __tablename__ = "failover_config"
    __table_args__ = (
        Index(
            "uq_failover_config_single_primary",
            "is_primary",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(50), unique=True)
    machine_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("machines.id", ondelete="SET NULL"), nullable=True
    )
    priority: Mapped[int] = mapped_column(Integer, default=100)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    region: Mapped[Optional[str]] = mapped_column(String(64))
    health_check_url: Mapped[Optional[str]] = mapped_column(Text)
    timeout_ms: Mapped[Optional[int]] = mapped_column(Integer)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_health_check: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    auto_failover_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    demoted_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class FailoverEvent(Base):
    __tablename__ = "failover_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    from_provider: Mapped[Optional[str]] = mapped_column(String(50))
    to_provider: Mapped[str] = mapped_column(String(50))
    from_machine_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    to_machine_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    reason: Mapped[str] = mapped_column(String(100))
    is_automatic: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now, index=True)


class HealthCheckResult(Base):
    __tablename__ = "health_check_results"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    check_type: Mapped[str] = mapped_column(String(50))
    provider: Mapped[str] = mapped_column(String(50), index=True)
    status: Mapped[str] = mapped_column(String(20))
    message: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class VpsMetric(Base):
    __tablename__ = "vps_metrics"
    __table_args__ = (Index("ix_vps_metrics_machine_recorded_at", "machine_id", "recorded_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    machine_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    provider: Mapped[str] = mapped_column(String(50))
    cpu_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))
    memory_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))
    disk_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer)
    uptime_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    recorded_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class TimelineEvent(Base):
    __tablename__ = "vps_timeline_events"
    __table_args__ = (Index("ix_vps_timeline_events_provider_created_at", "provider", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(50))
    event_type: Mapped[str] = mapped_column(String(50))
    event_subtype: Mapped[Optional[str]] = mapped_column(String(50))
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class VpsBenchmark(Base):
    __tablename__ = "vps_benchmarks"
    __table_args__ = (Index("ix_vps_benchmarks_provider_run_at", "provider", "run_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(50))
    machine_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    benchmark_type: Mapped[str] = mapped_column(String(50), default="exchange_latency")
    score: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    hft_score: Mapped[int] = mapped_column(Integer)
    exchange_latencies: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    raw_results: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    run_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)


class OrderColumnsMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    exchange: Mapped[str] = mapped_column(String(50))
    symbol: Mapped[str] = mapped_column(String(50))
    side: Mapped[str] = mapped_column(String(10))
    order_type: Mapped[str] = mapped_column(String(10), default="market")
    amount: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    status: Mapped[str] = mapped_column(String(20), default="pending")
    exchange_order_id: Mapped[Optional[str]] = mapped_column(String(128))
    client_order_id: Mapped[str] = mapped_column(String(64))
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True)
    filled_amount: Mapped[Decimal] = mapped_column(Numeric(24, 10), default=Decimal("0"))
    average_fill_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    filled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=1)


class PositionColumnsMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    exchange: Mapped[str] = mapped_column(String(50))
    symbol: Mapped[str] = mapped_column(String(50))
    side: Mapped[str] = mapped_column(String(10))
    size: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    entry_price: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(24, 10), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), default="open")
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    closed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=1)

    @declared_attr.directive
    def __table_args__(cls):
        return (
            Index(
                f"uq_{cls.__tablename__}_open_exchange_symbol_side",
                "exchange",
                "symbol",
                "side",
                unique=True,
                postgresql_where=text("status = 'open'"),
                sqlite_where=text("status = 'open'"),
            ),
        )


class Order(OrderColumnsMixin, Base):
    __tablename__ = "orders"

    machine_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))


class Position(PositionColumnsMixin, Base):
    __tablename__ = "positions"


class PaperOrder(OrderColumnsMixin, Base):
    __tablename__ = "paper_orders"


class PaperPosition(PositionColumnsMixin, Base):
    __tablename__ = "paper_positions"


class TransactionLog(Base):
    __tablename__ = "transaction_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action_type: Mapped[str] = mapped_column(String(50))
    exchange_name: Mapped[Optional[str]] = mapped_column(String(50))
    symbol: Mapped[Optional[str]] = mapped_column(String(50))
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(20))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now, index=True)


class TradingJournal(Base):
    __tablename__ = "trading_journal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    exchange: Mapped[str] = mapped_column(String(50))
    symbol: Mapped[str] = mapped_column(String(50))
    side: Mapped[str] = mapped_column(String(10))
    entry_price: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    exit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    status: Mapped[str] = mapped_column(String(20), default="closed")
    is_paper: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now, index=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))


class BalanceHistory(Base):
    __tablename__ = "balance_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    total_balance: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    exchange_breakdown: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    snapshot_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now, index=True)


class PaperBalanceHistory(Base):
    __tablename__ = "paper_balance_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cash_balance: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    total_equity: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    breakdown: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    snapshot_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now, index=True)


class MarketSignal(Base):
    __tablename__ = "ai_market_updates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    exchange_name: Mapped[Optional[str]] = mapped_column(String(50))
    symbol: Mapped[str] = mapped_column(String(50))
    sentiment: Mapped[Optional[str]] = mapped_column(String(20))
    confidence: Mapped[int] = mapped_column(Integer, default=0)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now, index=True)


class RateLimitedResource(Base):
    __tablename__ = "rate_limited_resources"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    rate_limit_rpm: Mapped[Optional[int]] = mapped_column(Integer)
    rate_limit_daily: Mapped[Optional[int]] = mapped_column(Integer)
    current_usage: Mapped[int] = mapped_column(Integer, default=0)
    daily_usage: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    last_reset_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    last_daily_reset_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
