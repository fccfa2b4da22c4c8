from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Protocol

import httpx

from apexguard.config import Settings
from apexguard.logging import get_logger

logger = get_logger(__name__)

CRITICAL_EVENTS = frozenset({"account_breach", "data_exfiltration", "privilege_escalation"})
HIGH_EVENTS = frozenset({"multiple_failed_logins", "suspicious_activity", "session_hijack"})
MEDIUM_EVENTS = frozenset({"password_change", "login_attempt", "session_expiry"})


def classify_security_event(event: str) -> str:
    if event in CRITICAL_EVENTS:
        return "critical"
    if event in HIGH_EVENTS:
        return "high"
    if event in MEDIUM_EVENTS:
        return "medium"
    return "low"


class SecurityEventSink(Protocol):
    """External security-monitoring destination for audit records."""

    def emit(self, record: Dict[str, Any]) -> None: ...


class HttpSecurityEventSink:
    """POST audit records to a monitoring endpoint off the request path.

    Delivery happens on a single worker thread; failures are logged and
    dropped.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-sink")

    def emit(self, record: Dict[str, Any]) -> None:
        self._executor.submit(self._deliver, record)

    def _deliver(self, record: Dict[str, Any]) -> None:
        try:
            response = self._client.post(self.url, json=record)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            logger.warning("security_sink_delivery_failed", url=self.url, error=str(exc))

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()


class AuditLog:
    """Classifies, timestamps and emits security events.

    ``log_security_event`` never raises: a gap in the audit trail must not
    block the request that produced it.
    """

    def __init__(
        self,
        settings: Settings,
        sinks: Iterable[SecurityEventSink] = (),
        *,
        clock: Callable[[], float] = time.time,
        history: int = 100,
    ) -> None:
        self.settings = settings
        self.sinks: List[SecurityEventSink] = list(sinks)
        self._clock = clock
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=history)
        self._lock = threading.Lock()

    def add_sink(self, sink: SecurityEventSink) -> None:
        self.sinks.append(sink)

    def log_security_event(
        self,
        event: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        try:
            record = {
                "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
                "event": event,
                "user_id": user_id,
                "details": details,
                "level": classify_security_event(event),
            }
            with self._lock:
                self._recent.append(record)
            fields = {
                "security_event": event,
                "severity": record["level"],
                "user_id": user_id,
                "details": details,
                "occurred_at": record["timestamp"],
            }
            if self.settings.is_development:
                logger.info("security_event_dev", **fields)
            else:
                logger.warning("security_event", **fields)
                for sink in self.sinks:
                    try:
                        sink.emit(record)
                    except Exception as exc:  # noqa: BLE001
                        logger.error(
                            "security_sink_failed",
                            sink=type(sink).__name__,
                            security_event=event,
                            error=str(exc),
                        )
            return record
        except Exception as exc:  # noqa: BLE001 - audit failures never propagate
            try:
                logger.error("security_event_dropped", security_event=event, error=str(exc))
            except Exception:  # noqa: BLE001
                pass
            return None

    def recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self._recent)
        return records[-limit:] if limit else records


def build_sinks(settings: Settings) -> List[SecurityEventSink]:
    if settings.security_monitoring_url:
        return [HttpSecurityEventSink(settings.security_monitoring_url)]
    return []


__all__ = [
    "AuditLog",
    "HttpSecurityEventSink",
    "SecurityEventSink",
    "build_sinks",
    "classify_security_event",
]
