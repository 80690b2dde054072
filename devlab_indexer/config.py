import os, json, pathlib
from dotenv import load_dotenv

import structlog

logger = structlog.get_logger()

# always load from local file
load_dotenv(".env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# -------- env / config --------
RPC_URL                    = os.getenv("RPC_URL")
DB_PATH                    = os.getenv("DB_PATH", "devlab_index.sqlite")
POLL_INTERVAL              = float(os.getenv("POLL_INTERVAL", "1.0"))
MAX_POLL_FAILURES          = int(os.getenv("MAX_POLL_FAILURES", "30"))
RECEIPT_CONC               = int(os.getenv("RECEIPT_CONC", "20"))
METRICS_INTERVAL           = float(os.getenv("METRICS_INTERVAL", "1.0"))
RECENT_EVENTS_ON_SUBSCRIBE = int(os.getenv("RECENT_EVENTS_ON_SUBSCRIBE", "10"))
SUBSCRIBER_QUEUE_SIZE      = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "1000"))
MAX_REPLAY_SESSIONS        = int(os.getenv("MAX_REPLAY_SESSIONS", "32"))
STORE_TRANSACTIONS         = _flag("STORE_TRANSACTIONS", "1")
API_HOST                   = os.getenv("API_HOST", "0.0.0.0")
API_PORT                   = int(os.getenv("API_PORT", "8000"))
MCP_PORT                   = int(os.getenv("MCP_PORT", "8001"))
LOG_LEVEL                  = os.getenv("LOG_LEVEL", "info")
# unset: resume after the last stored block, or start at the chain head
START_BLOCK                = int(os.environ["START_BLOCK"]) if os.getenv("START_BLOCK") else None

# --- metrics windows accepted by storage.get_metrics ---
METRIC_WINDOWS = {
    "1h": 3600,
    "24h": 24 * 3600,
    "7d": 7 * 24 * 3600,
}
DEFAULT_METRIC_WINDOW = "1h"

# contracts watchlist (optional)
CONTRACTS_PATH = os.getenv("CONTRACTS_PATH", "contracts.json")


def load_watchlist(path: str = CONTRACTS_PATH) -> list[dict]:
    """
    Read the startup watchlist: [{"address": "0x..", "abi": [...] | "abi_path": "x.json", "name": ".."}].
    Hardhat artifacts (objects with an "abi" field) are accepted for abi_path.
    """
    p = pathlib.Path(path)
    if not p.exists():
        logger.info("Watchlist not found, continuing without it", path=path)
        return []
    try:
        entries = json.loads(p.read_text())
    except (OSError, ValueError) as e:
        logger.warning("Failed to parse watchlist", path=path, error=str(e))
        return []

    out = []
    for c in entries:
        abi = c.get("abi")
        abi_path = c.get("abi_path")
        if abi is None and abi_path:
            ap = pathlib.Path(abi_path)
            if not ap.is_absolute():
                ap = p.parent / ap
            try:
                abi = json.loads(ap.read_text())
            except (OSError, ValueError) as e:
                logger.warning("Failed to read ABI file", path=str(ap), error=str(e))
                continue
            if isinstance(abi, dict):
                abi = abi.get("abi")
        if not c.get("address") or abi is None:
            continue
        out.append({"address": c["address"], "abi": abi, "name": c.get("name")})
    return out
