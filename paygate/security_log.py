import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

security_logger = logging.getLogger("paygate.security")

WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
ORDER_OWNERSHIP_MISMATCH = "ORDER_OWNERSHIP_MISMATCH"
MANUAL_REVIEW_DECISION = "MANUAL_REVIEW_DECISION"
ORDER_REPLAY_REJECTED = "ORDER_REPLAY_REJECTED"


def hash_ip(ip: Optional[str]) -> str:
    """Salted, truncated hash so repeat offenders can be correlated without storing IPs."""
    if not ip:
        return "unknown"
    salt = os.getenv("IP_HASH_SALT", "paygate-ip-salt")
    return hashlib.sha256(f"{ip}{salt}".encode("utf-8")).hexdigest()[:16]


def log_security_event(event_type: str, *, client_ip: Optional[str] = None, **context: Any) -> None:
    event = {
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "ip_hash": hash_ip(client_ip),
        **context,
    }
    security_logger.warning(
        "security_event %s",
        json.dumps(event, default=str, sort_keys=True),
        extra={"security_event": event},
    )
