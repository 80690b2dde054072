import json
from datetime import datetime, timezone
from typing import Any

from hexbytes import HexBytes
from web3 import AsyncWeb3

# ---------------- helpers ----------------
def to_hex(x):
    if x is None: return None
    if isinstance(x, (bytes, bytearray)):
        h = bytes(x).hex()
        return h if h.startswith("0x") else "0x" + h
    if isinstance(x, int): return hex(x)
    return str(x)

def to_addr(x):
    if x is None: return None
    return AsyncWeb3.to_checksum_address(x)

def hex_to_int(x):
    if x is None: return None
    if isinstance(x, int): return x
    if isinstance(x, bytes): return int.from_bytes(x, "big")
    s = str(x)
    return int(s, 16) if s.startswith("0x") else int(s)

def to_bytes(x) -> HexBytes:
    if isinstance(x, HexBytes): return x
    if isinstance(x, (bytes, bytearray)): return HexBytes(x)
    return HexBytes(str(x))

def ts_to_datetime(ts) -> datetime:
    """Block timestamps arrive as int seconds or hex strings."""
    return datetime.fromtimestamp(hex_to_int(ts), tz=timezone.utc)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def parse_time(value) -> datetime:
    """Accept ISO-8601 strings (with or without 'Z'), unix seconds, or datetimes; always tz-aware UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        s = str(value).strip()
        if s.isdigit():
            dt = datetime.fromtimestamp(int(s), tz=timezone.utc)
        else:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def to_json_value(obj: Any) -> Any:
    """Make decoded ABI values JSON friendly (bytes -> 0x hex, big ints -> str)."""
    if isinstance(obj, (bytes, bytearray)):
        return to_hex(obj)
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        # JS clients lose precision past 2**53
        return str(obj) if abs(obj) > 2**53 else obj
    if isinstance(obj, (list, tuple)):
        return [to_json_value(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): to_json_value(v) for k, v in obj.items()}
    return obj

def json_dumps(obj: Any) -> str:
    return json.dumps(to_json_value(obj), default=str)
