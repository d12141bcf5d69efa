import re
import time
from datetime import datetime, timedelta
from typing import Optional

from paygate.errors import InvalidOrderId

ORDER_PREFIX = "ORDER"
MANUAL_ORDER_PREFIX = "RPAY"

_EPOCH = datetime(1970, 1, 1)

_PREFIX_RE = re.compile(r"[A-Z][A-Z0-9]*")


def build_order_id(prefix: str, account_id: int, epoch_millis: Optional[int] = None) -> str:
    """Return ``<PREFIX>_<accountId>_<epochMillis>``; the account id is mandatory."""
    if not _PREFIX_RE.fullmatch(prefix or ""):
        raise ValueError(f"Invalid order prefix: {prefix!r}")
    if isinstance(account_id, bool) or not isinstance(account_id, int) or account_id <= 0:
        raise ValueError("Order ids must embed a positive account id.")
    if epoch_millis is None:
        epoch_millis = int(time.time() * 1000)
    return f"{prefix}_{account_id}_{epoch_millis}"


def parse_account_id(order_id: str) -> int:
    parts = str(order_id or "").strip().split("_")
    if len(parts) != 3:
        raise InvalidOrderId()

    prefix, raw_account_id, raw_epoch = parts
    if not _PREFIX_RE.fullmatch(prefix):
        raise InvalidOrderId()
    # isdecimal() rejects signs, whitespace and non-ASCII digits that int() would accept.
    if not (raw_account_id.isascii() and raw_account_id.isdecimal()):
        raise InvalidOrderId()
    if not (raw_epoch.isascii() and raw_epoch.isdecimal()):
        raise InvalidOrderId()

    account_id = int(raw_account_id)
    if account_id <= 0:
        raise InvalidOrderId()
    return account_id


def order_prefix(order_id: str) -> str:
    parse_account_id(order_id)
    return order_id.strip().split("_", 1)[0]


def order_created_at(order_id: str) -> datetime:
    """Naive UTC creation time encoded in the order id."""
    parse_account_id(order_id)
    epoch_millis = int(order_id.strip().rsplit("_", 1)[1])
    try:
        return _EPOCH + timedelta(milliseconds=epoch_millis)
    except OverflowError:
        raise InvalidOrderId()
