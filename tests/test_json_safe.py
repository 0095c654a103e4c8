import ipaddress
import json
import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from hft_fleet.utils.json_safe import json_safe


def test_json_safe_serializes_objects():
    machine_id = uuid.uuid4()
    payload = {
        "ip": ipaddress.ip_address("127.0.0.1"),
        "amount": Decimal("1.23"),
        "ts": datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc),
        "machine": machine_id,
        "latency": math.inf,
        "tags": ("nrt", "sgp"),
        7: b"\x01\x02",
    }
    safe = json_safe(payload)
    json.dumps(safe)
    assert safe["ip"] == "127.0.0.1"
    assert safe["amount"] == "1.23"
    assert safe["ts"] == "2024-01-01T00:00:00+00:00"
    assert safe["machine"] == str(machine_id)
    assert safe["latency"] is None
    assert safe["tags"] == ["nrt", "sgp"]
    assert safe["7"] == "0102"


def test_json_safe_keeps_plain_values():
    assert json_safe({"ok": True, "n": 3, "f": 1.5, "s": "x", "none": None}) == {
        "ok": True,
        "n": 3,
        "f": 1.5,
        "s": "x",
        "none": None,
    }
