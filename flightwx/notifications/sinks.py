"""
Fire-and-forget side effects: notifications and the audit trail.

The engine commits its own state first, then hands work to an
EffectDispatcher. Nothing the dispatcher runs can roll back or fail a
conflict / option-set transition; errors are logged and dropped.

  ThreadedDispatcher → production, a small worker pool
  InlineDispatcher   → tests and scripts, runs immediately
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from flightwx.models import AuditLog, FlightBooking, Notification, NotificationType, Severity

logger = logging.getLogger(__name__)

SEVERITY_ICONS = {Severity.HIGH: "🔴", Severity.MEDIUM: "🟡", Severity.LOW: "🟢"}


# ── Sink interfaces ───────────────────────────────────────────────────────────

class NotificationSink(Protocol):
    def notify(self, recipient_id: str, type: str, payload: dict) -> None: ...


class AuditSink(Protocol):
    def record(self, entity_type: str, entity_id: str, action: str,
               details: Optional[dict] = None) -> None: ...


# ── Dispatchers ───────────────────────────────────────────────────────────────

class InlineDispatcher:
    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("side effect %s failed", getattr(fn, "__name__", fn))

    def shutdown(self, wait: bool = True) -> None:
        pass


class ThreadedDispatcher(InlineDispatcher):
    def __init__(self, max_workers: int = 2):
        self._pool = ThreadPoolExecutor(max_workers=max_workers,
                                        thread_name_prefix="flightwx-effects")

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> None:
        self._pool.submit(super().submit, fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


class SideEffects:
    """What the lifecycle managers call after a commit."""

    def __init__(self, notifications: NotificationSink, audit: AuditSink,
                 dispatcher: Optional[InlineDispatcher] = None):
        self.notifications = notifications
        self.audit = audit
        self.dispatcher = dispatcher or InlineDispatcher()

    def conflict_opened(self, booking: FlightBooking, conflict_id: str,
                        violations: list[str], severity: Severity) -> None:
        title, student_msg, instructor_msg = conflict_messages(
            booking.scheduled_date, violations, severity)
        priority = "high" if severity == Severity.HIGH else "medium"
        metadata = {"violations": list(violations), "severity": severity.value,
                    "conflict_id": conflict_id}
        self._notify_both(booking, NotificationType.WEATHER_CONFLICT, title,
                          student_msg, instructor_msg, priority, metadata)

    def options_suggested(self, booking: FlightBooking, option_set_id: str,
                          options_count: int) -> None:
        title, student_msg, instructor_msg = reschedule_messages(
            booking.scheduled_date, options_count)
        metadata = {"options_count": options_count, "option_set_id": option_set_id}
        self._notify_both(booking, NotificationType.RESCHEDULE_SUGGESTION, title,
                          student_msg, instructor_msg, "medium", metadata)

    def audit_event(self, entity_type: str, entity_id: str, action: str,
                    details: Optional[dict] = None) -> None:
        self.dispatcher.submit(self.audit.record, entity_type, entity_id, action, details)

    def _notify_both(self, booking, type_, title, student_msg, instructor_msg,
                     priority, metadata) -> None:
        for recipient_type, recipient_id, message in (
            ("student", booking.student_id, student_msg),
            ("instructor", booking.instructor_id, instructor_msg),
        ):
            payload = {
                "booking_id": booking.id,
                "recipient_type": recipient_type,
                "title": title,
                "message": message,
                "priority": priority,
                "metadata": metadata,
            }
            self.dispatcher.submit(self.notifications.notify, recipient_id, type_.value, payload)


# ── Message templates ─────────────────────────────────────────────────────────

def conflict_messages(scheduled: datetime, violations: list[str],
                      severity: Severity) -> tuple[str, str, str]:
    when = scheduled.strftime("%Y-%m-%d %H:%M")
    text = ", ".join(violations)
    title = f"{SEVERITY_ICONS[severity]} Weather Conflict Detected"
    return (
        title,
        f"Your flight on {when} has unsafe weather conditions. Violations: {text}",
        f"Flight on {when} has unsafe weather. Violations: {text}",
    )


def reschedule_messages(scheduled: datetime, options_count: int) -> tuple[str, str, str]:
    when = scheduled.strftime("%Y-%m-%d %H:%M")
    return (
        "New Reschedule Options Available",
        f"{options_count} alternative times were suggested for your flight originally "
        f"scheduled on {when}. Review the options to reschedule.",
        f"{options_count} alternative times were suggested for the flight on {when}.",
    )


# ── Database-backed sinks ─────────────────────────────────────────────────────

class DatabaseNotificationSink:
    """Writes notifications rows; opens its own session (runs off-thread)."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def notify(self, recipient_id: str, type: str, payload: dict) -> None:
        with self.session_factory() as db:
            db.add(Notification(
                booking_id=payload.get("booking_id"),
                recipient_type=payload.get("recipient_type", "student"),
                recipient_id=recipient_id,
                type=NotificationType(type),
                title=payload["title"],
                message=payload["message"],
                priority=payload.get("priority", "medium"),
                notification_metadata=payload.get("metadata"),
            ))
            db.commit()


class DatabaseAuditSink:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(self, entity_type: str, entity_id: str, action: str,
               details: Optional[dict] = None) -> None:
        with self.session_factory() as db:
            db.add(AuditLog(entity_type=entity_type, entity_id=entity_id,
                            action=action, details=details))
            db.commit()


class RecordingSink:
    """In-memory notification + audit sink for tests and dry runs."""

    def __init__(self):
        self.notifications: list[tuple[str, str, dict]] = []
        self.audit: list[tuple[str, str, str, Optional[dict]]] = []

    def notify(self, recipient_id: str, type: str, payload: dict) -> None:
        self.notifications.append((recipient_id, type, payload))

    def record(self, entity_type: str, entity_id: str, action: str,
               details: Optional[dict] = None) -> None:
        self.audit.append((entity_type, entity_id, action, details))

    def actions(self) -> list[str]:
        return [a[2] for a in self.audit]
