from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable


logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], None]

QRIS_CREATED = "qris_created"
QRIS_PAID = "qris_paid"
QRIS_EXPIRED = "qris_expired"
QRIS_DELETED = "qris_deleted"


class PaymentEvents:
    """
    In-process fan-out for payment lifecycle events (e.g. to push "paid" notifications).
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def emit(self, event_type: str, data: Any) -> dict:
        payload = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                # One broken subscriber must not stop the others.
                logger.exception("Payment event handler failed (event=%s)", event_type)
        return payload


payment_events = PaymentEvents()
