"""
Entity store — the narrow window onto bookings and students.

Bookings, students and instructors are owned by the surrounding application;
the engine only reads them and patches booking date/status.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from flightwx.clock import Clock, utcnow
from flightwx.models import BookingStatus, FlightBooking, Student

ACTIVE_STATUSES = (BookingStatus.SCHEDULED, BookingStatus.WEATHER_CONFLICT)


class BookingStore:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def get_booking(self, booking_id: str) -> Optional[FlightBooking]:
        return self.db.get(FlightBooking, booking_id)

    def get_student(self, student_id: str) -> Optional[Student]:
        return self.db.get(Student, student_id)

    def patch_booking(self, booking: FlightBooking, **fields) -> FlightBooking:
        """Stage field changes on the booking; the caller commits."""
        for key, value in fields.items():
            if not hasattr(FlightBooking, key):
                raise AttributeError(f"FlightBooking has no field {key!r}")
            setattr(booking, key, value)
        booking.updated_at = self.clock()
        return booking

    def active_bookings(self, start: datetime, end: datetime) -> list[FlightBooking]:
        """Bookings the batch driver should watch, earliest first."""
        return (
            self.db.query(FlightBooking)
            .filter(FlightBooking.status.in_(ACTIVE_STATUSES))
            .filter(FlightBooking.scheduled_date >= start)
            .filter(FlightBooking.scheduled_date <= end)
            .order_by(FlightBooking.scheduled_date)
            .all()
        )
