"""Initial schema for the HFT fleet control plane.

Run migrations with (example for SQLite dev):
- export DATABASE_URL=sqlite+aiosqlite:///./dev.db
- alembic upgrade head

Switch DATABASE_URL to PostgreSQL (postgresql+asyncpg) for production.
"""

from collections.abc import Sequence
from typing import Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NOW = sa.text("CURRENT_TIMESTAMP")
MONEY = sa.Numeric(24, 10)


def _order_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("exchange", sa.String(length=50), nullable=False),
        sa.Column("symbol", sa.String(length=50), nullable=False),
        sa.Column("side", sa.String(length=10), nullable=False),
        sa.Column("order_type", sa.String(length=10), nullable=False, server_default="market"),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("price", MONEY, nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("exchange_order_id", sa.String(length=128), nullable=True),
        sa.Column("client_order_id", sa.String(length=64), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("filled_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("average_fill_price", MONEY, nullable=True),
        sa.Column("fee", MONEY, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("filled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    ]


def _position_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("exchange", sa.String(length=50), nullable=False),
        sa.Column("symbol", sa.String(length=50), nullable=False),
        sa.Column("side", sa.String(length=10), nullable=False),
        sa.Column("size", MONEY, nullable=False),
        sa.Column("entry_price", MONEY, nullable=False),
        sa.Column("current_price", MONEY, nullable=True),
        sa.Column("realized_pnl", MONEY, nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("closed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index(
        f"uq_{name}_open_exchange_symbol_side",
        name,
        ["exchange", "symbol", "side"],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
        sqlite_where=sa.text("status = 'open'"),
    )


def upgrade() -> None:
    op.create_table(
        "provider_credentials",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("field_name", sa.String(length=100), nullable=False),
        sa.Column("encrypted_value", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_validated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.UniqueConstraint("provider", "field_name", name="uq_provider_credentials_provider_field"),
    )
    op.create_index("ix_provider_credentials_provider", "provider_credentials", ["provider"])

    op.create_table(
        "ssh_keys",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("public_key", sa.Text(), nullable=True),
        sa.Column("private_key_encrypted", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )

    op.create_table(
        "machines",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("provider_instance_id", sa.String(length=255), nullable=True),
        sa.Column("client_request_id", sa.String(length=64), nullable=False),
        sa.Column("region", sa.String(length=64), nullable=False),
        sa.Column("size", sa.String(length=20), nullable=False),
        sa.Column("nickname", sa.String(length=150), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("ssh_key_ref", sa.Uuid(as_uuid=True), sa.ForeignKey("ssh_keys.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="creating"),
        sa.Column("bot_status", sa.String(length=20), nullable=False, server_default="not_deployed"),
        sa.Column("monthly_cost", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("expected_ready_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("uptime_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("last_health_check", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("destroyed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("provider", "client_request_id", name="uq_machines_provider_client_request"),
    )
    op.create_index("ix_machines_provider_status", "machines", ["provider", "status"])

    op.create_table(
        "deployments",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("machine_id", sa.Uuid(as_uuid=True), sa.ForeignKey("machines.id", ondelete="CASCADE"), nullable=False),
        sa.Column("server_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("bot_status", sa.String(length=20), nullable=False, server_default="not_deployed"),
        sa.Column("ssh_key_ref", sa.Uuid(as_uuid=True), sa.ForeignKey("ssh_keys.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_deployments_machine_id", "deployments", ["machine_id"])

    op.create_table(
        "trading_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bot_status", sa.String(length=20), nullable=False, server_default="stopped"),
        sa.Column("trading_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trading_mode", sa.String(length=20), nullable=False, server_default="spot"),
        sa.Column("test_mode", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("global_kill_switch_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("max_position_size", MONEY, nullable=True),
        sa.Column("max_daily_loss", MONEY, nullable=True),
        sa.Column("max_drawdown_pct", sa.Numeric(10, 4), nullable=True),
        sa.Column("max_slippage_pct", sa.Numeric(10, 4), nullable=True),
        sa.Column("min_balance", MONEY, nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )

    op.create_table(
        "exchange_connections",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("exchange_name", sa.String(length=50), nullable=False, unique=True),
        sa.Column("api_key_encrypted", sa.Text(), nullable=True),
        sa.Column("api_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("api_passphrase_encrypted", sa.Text(), nullable=True),
        sa.Column("is_connected", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("balance_usdt", MONEY, nullable=True),
        sa.Column("last_ping_ms", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )

    op.create_table(
        "failover_config",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False, unique=True),
        sa.Column("machine_id", sa.Uuid(as_uuid=True), sa.ForeignKey("machines.id", ondelete="SET NULL"), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("region", sa.String(length=64), nullable=True),
        sa.Column("health_check_url", sa.Text(), nullable=True),
        sa.Column("timeout_ms", sa.Integer(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_health_check", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("auto_failover_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("demoted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index(
        "uq_failover_config_single_primary",
        "failover_config",
        ["is_primary"],
        unique=True,
        postgresql_where=sa.text("is_primary"),
        sqlite_where=sa.text("is_primary = 1"),
    )

    op.create_table(
        "failover_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("from_provider", sa.String(length=50), nullable=True),
        sa.Column("to_provider", sa.String(length=50), nullable=False),
        sa.Column("from_machine_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("to_machine_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("reason", sa.String(length=100), nullable=False),
        sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_failover_events_created_at", "failover_events", ["created_at"])

    op.create_table(
        "health_check_results",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("check_type", sa.String(length=50), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_health_check_results_provider", "health_check_results", ["provider"])

    op.create_table(
        "vps_metrics",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("machine_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("cpu_percent", sa.Numeric(6, 2), nullable=True),
        sa.Column("memory_percent", sa.Numeric(6, 2), nullable=True),
        sa.Column("disk_percent", sa.Numeric(6, 2), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("uptime_seconds", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_vps_metrics_machine_recorded_at", "vps_metrics", ["machine_id", "recorded_at"])

    op.create_table(
        "vps_timeline_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("event_subtype", sa.String(length=50), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index(
        "ix_vps_timeline_events_provider_created_at", "vps_timeline_events", ["provider", "created_at"]
    )

    op.create_table(
        "vps_benchmarks",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("machine_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("benchmark_type", sa.String(length=50), nullable=False, server_default="exchange_latency"),
        sa.Column("score", sa.Numeric(12, 3), nullable=False),
        sa.Column("hft_score", sa.Integer(), nullable=False),
        sa.Column("exchange_latencies", sa.JSON(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("raw_results", sa.JSON(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("run_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_vps_benchmarks_provider_run_at", "vps_benchmarks", ["provider", "run_at"])

    op.create_table(
        "orders",
        *_order_columns(),
        sa.Column("machine_id", sa.Uuid(as_uuid=True), nullable=True),
    )
    _position_table("positions")
    op.create_table("paper_orders", *_order_columns())
    _position_table("paper_positions")

    op.create_table(
        "transaction_log",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("action_type", sa.String(length=50), nullable=False),
        sa.Column("exchange_name", sa.String(length=50), nullable=True),
        sa.Column("symbol", sa.String(length=50), nullable=True),
        sa.Column("details", sa.JSON(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_transaction_log_created_at", "transaction_log", ["created_at"])

    op.create_table(
        "trading_journal",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("exchange", sa.String(length=50), nullable=False),
        sa.Column("symbol", sa.String(length=50), nullable=False),
        sa.Column("side", sa.String(length=10), nullable=False),
        sa.Column("entry_price", MONEY, nullable=False),
        sa.Column("exit_price", MONEY, nullable=True),
        sa.Column("quantity", MONEY, nullable=False),
        sa.Column("pnl", MONEY, nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="closed"),
        sa.Column("is_paper", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
        sa.Column("closed_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_trading_journal_created_at", "trading_journal", ["created_at"])

    op.create_table(
        "balance_history",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("total_balance", MONEY, nullable=False),
        sa.Column("exchange_breakdown", sa.JSON(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("snapshot_time", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_balance_history_snapshot_time", "balance_history", ["snapshot_time"])

    op.create_table(
        "paper_balance_history",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("cash_balance", MONEY, nullable=False),
        sa.Column("total_equity", MONEY, nullable=False),
        sa.Column("breakdown", sa.JSON(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("snapshot_time", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_paper_balance_history_snapshot_time", "paper_balance_history", ["snapshot_time"])

    op.create_table(
        "ai_market_updates",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("exchange_name", sa.String(length=50), nullable=True),
        sa.Column("symbol", sa.String(length=50), nullable=False),
        sa.Column("sentiment", sa.String(length=20), nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("current_price", MONEY, nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )
    op.create_index("ix_ai_market_updates_created_at", "ai_market_updates", ["created_at"])

    op.create_table(
        "rate_limited_resources",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("rate_limit_rpm", sa.Integer(), nullable=True),
        sa.Column("rate_limit_daily", sa.Integer(), nullable=True),
        sa.Column("current_usage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_usage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cooldown_until", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_reset_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_daily_reset_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=NOW, nullable=False),
    )


def downgrade() -> None:
    for table in (
        "rate_limited_resources",
        "ai_market_updates",
        "paper_balance_history",
        "balance_history",
        "trading_journal",
        "transaction_log",
        "paper_positions",
        "paper_orders",
        "positions",
        "orders",
        "vps_benchmarks",
        "vps_timeline_events",
        "vps_metrics",
        "health_check_results",
        "failover_events",
        "failover_config",
        "exchange_connections",
        "trading_config",
        "deployments",
        "machines",
        "ssh_keys",
        "provider_credentials",
    ):
        op.drop_table(table)
