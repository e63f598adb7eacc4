# Overview: Domain event signals delivered to in-process subscribers after commit.

from __future__ import annotations

import logging
from typing import Any

from blinker import Namespace

from ..time_utils import to_utc_z, utcnow


logger = logging.getLogger(__name__)

_signals = Namespace()

PRODUCT_CREATED = "product.created"
PRODUCT_UPDATED = "product.updated"
STOCK_ADJUSTED = "stock.adjusted"

product_created = _signals.signal(PRODUCT_CREATED)
product_updated = _signals.signal(PRODUCT_UPDATED)
stock_adjusted = _signals.signal(STOCK_ADJUSTED)

EVENT_SIGNALS = {
    PRODUCT_CREATED: product_created,
    PRODUCT_UPDATED: product_updated,
    STOCK_ADJUSTED: stock_adjusted,
}


def build_event(name: str, *, tenant_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": name,
        "tenant_id": tenant_id,
        "timestamp": to_utc_z(utcnow()),
        "data": data,
    }


def emit(name: str, *, tenant_id: str, data: dict[str, Any]) -> dict[str, Any]:
    """
    Fire-and-forget delivery. Call only after the transaction has committed.

    Receivers get (tenant_id, event=...). A failing receiver is logged and
    does not stop the others or the caller.
    """
    event = build_event(name, tenant_id=tenant_id, data=data)
    signal = EVENT_SIGNALS[name]
    for receiver in list(signal.receivers_for(tenant_id)):
        try:
            receiver(tenant_id, event=event)
        except Exception:  # noqa: BLE001
            logger.exception("Event subscriber failed for %s", name)
    return event
