from hft_fleet.store.common import as_utc, dialect_insert, now_utc
from hft_fleet.store.fleet import (
    find_deployment,
    get_machine,
    get_trading_config,
    insert_machine,
    sync_bot_status,
    update_machine_status,
    upsert_deployment,
)
from hft_fleet.store.orders import (
    append_transaction_log,
    insert_pending_order,
    mark_order_cancelled,
    mark_order_filled,
    mark_order_rejected,
)
from hft_fleet.store.timeline import append_timeline_event

__all__ = [
    "as_utc",
    "dialect_insert",
    "now_utc",
    "find_deployment",
    "get_machine",
    "get_trading_config",
    "insert_machine",
    "sync_bot_status",
    "update_machine_status",
    "upsert_deployment",
    "append_transaction_log",
    "insert_pending_order",
    "mark_order_cancelled",
    "mark_order_filled",
    "mark_order_rejected",
    "append_timeline_event",
]
