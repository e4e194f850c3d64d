"""
Option-set lifecycle: pending → accepted | rejected | expired (all terminal).

accept/reject refuse to touch a set that is no longer pending; a second
finalization is an InvariantViolation rather than last-write-wins.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from flightwx.clock import Clock, utcnow
from flightwx.errors import InvariantViolation, NotFound, ValidationError
from flightwx.models import BookingStatus, OptionSetStatus, RescheduleOptionSet
from flightwx.notifications.sinks import SideEffects
from flightwx.reschedule.schemas import RescheduleOption
from flightwx.store import BookingStore

logger = logging.getLogger(__name__)


class OptionLifecycle:
    def __init__(self, db: Session, effects: SideEffects,
                 store: Optional[BookingStore] = None, clock: Clock = utcnow):
        self.db = db
        self.effects = effects
        self.store = store or BookingStore(db, clock)
        self.clock = clock

    def accept(self, option_set_id: str, index: int) -> datetime:
        option_set = self._pending(option_set_id)
        options = option_set.options or []
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(options):
            raise ValidationError("invalid option index", field="index",
                                  details={"index": index, "count": len(options)})

        chosen = RescheduleOption.from_record(options[index])
        booking = self.store.get_booking(option_set.booking_id)
        if booking is None:
            raise NotFound("Booking", option_set.booking_id)

        now = self.clock()
        self.store.patch_booking(booking, scheduled_date=chosen.date,
                                 status=BookingStatus.RESCHEDULED)
        option_set.status = OptionSetStatus.ACCEPTED
        option_set.selected_option_index = index
        option_set.finalized_at = now
        self.db.commit()

        logger.info("booking %s rescheduled to %s (option %d of set %s)",
                    booking.id, chosen.date.isoformat(), index, option_set.id)
        self.effects.audit_event("reschedule", option_set.id, "accepted", {
            "booking_id": booking.id,
            "new_date": chosen.date.isoformat(),
            "reasoning": chosen.reasoning,
        })
        return chosen.date

    def reject(self, option_set_id: str, reason: Optional[str] = None) -> RescheduleOptionSet:
        option_set = self._pending(option_set_id)
        option_set.status = OptionSetStatus.REJECTED
        option_set.rejection_reason = reason
        option_set.finalized_at = self.clock()
        self.db.commit()

        logger.info("option set %s rejected", option_set.id)
        self.effects.audit_event("reschedule", option_set.id, "rejected", {"reason": reason})
        return option_set

    def _pending(self, option_set_id: str) -> RescheduleOptionSet:
        option_set = (
            self.db.query(RescheduleOptionSet)
            .filter(RescheduleOptionSet.id == option_set_id)
            .with_for_update()
            .first()
        )
        if option_set is None:
            raise NotFound("RescheduleOptionSet", option_set_id)
        if option_set.status != OptionSetStatus.PENDING:
            raise InvariantViolation("already finalized",
                                     details={"option_set_id": option_set_id,
                                              "status": option_set.status.value})
        return option_set

    # ── Queries ───────────────────────────────────────────────────────────────

    def pending_for_booking(self, booking_id: str) -> Optional[RescheduleOptionSet]:
        return (
            self.db.query(RescheduleOptionSet)
            .filter(RescheduleOptionSet.booking_id == booking_id,
                    RescheduleOptionSet.status == OptionSetStatus.PENDING)
            .first()
        )

    def history(self, booking_id: str) -> list[RescheduleOptionSet]:
        return (
            self.db.query(RescheduleOptionSet)
            .filter(RescheduleOptionSet.booking_id == booking_id)
            .order_by(RescheduleOptionSet.generated_at.desc())
            .all()
        )

    def list_pending(self) -> list[RescheduleOptionSet]:
        return (
            self.db.query(RescheduleOptionSet)
            .filter(RescheduleOptionSet.status == OptionSetStatus.PENDING)
            .order_by(RescheduleOptionSet.generated_at.desc())
            .all()
        )
