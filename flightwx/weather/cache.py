"""
Weather cache — timestamped observations per location with an expiry.

Append-only: `store` always inserts, so concurrent writers never race on an
update. A lookup only ever returns an entry whose expires_at is still in the
future; expired rows linger until `sweep` deletes them.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from flightwx.clock import Clock, utcnow
from flightwx.models import WeatherConflict, WeatherObservation
from flightwx.weather.fetcher import CACHE_TTL_MINUTES, build_observation

logger = logging.getLogger(__name__)


class WeatherCache:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def lookup(self, lat: float, lon: float) -> Optional[WeatherObservation]:
        """Latest still-valid observation for the exact location, else None."""
        now = self.clock()
        return (
            self.db.query(WeatherObservation)
            .filter(WeatherObservation.lat == lat, WeatherObservation.lon == lon)
            .filter(WeatherObservation.expires_at > now)
            .order_by(WeatherObservation.observed_at.desc(),
                      WeatherObservation.fetched_at.desc())
            .first()
        )

    def store(self, observation: WeatherObservation) -> WeatherObservation:
        self.db.add(observation)
        self.db.commit()
        logger.debug("cached weather for %s (expires %s)",
                     observation.location_name, observation.expires_at.isoformat())
        return observation

    def latest(self, lat: float, lon: float) -> Optional[WeatherObservation]:
        """Most recent observation regardless of expiry (display only)."""
        return (
            self.db.query(WeatherObservation)
            .filter(WeatherObservation.lat == lat, WeatherObservation.lon == lon)
            .order_by(WeatherObservation.observed_at.desc())
            .first()
        )

    def history(self, lat: float, lon: float, limit: Optional[int] = None) -> list[WeatherObservation]:
        query = (
            self.db.query(WeatherObservation)
            .filter(WeatherObservation.lat == lat, WeatherObservation.lon == lon)
            .order_by(WeatherObservation.observed_at.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def sweep(self) -> int:
        """Delete expired rows. Rows still referenced by a conflict are kept."""
        now = self.clock()
        referenced = select(WeatherConflict.weather_observation_id)
        deleted = (
            self.db.query(WeatherObservation)
            .filter(WeatherObservation.expires_at < now)
            .filter(WeatherObservation.id.not_in(referenced))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info("swept %d expired weather observations", deleted)
        return deleted

    def refresh(self, client, lat: float, lon: float, location_name: str,
                ttl_minutes: int = CACHE_TTL_MINUTES) -> WeatherObservation:
        """Fetch current conditions and cache them. ExternalServiceError propagates."""
        raw = client.fetch_observation(lat, lon)
        observation = build_observation(raw, location_name, lat, lon,
                                        fetched_at=self.clock(),
                                        ttl=timedelta(minutes=ttl_minutes))
        return self.store(observation)
