from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from boxoffice.logging import get_logger
from boxoffice.storage.errors import StoreUnavailable
from boxoffice.storage.models import Coordinate, LoginEvent

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


@dataclass(frozen=True)
class AnomalyResult:
    suspicious: bool
    reason: Optional[str] = None
    coordinate: Optional[Coordinate] = None


class AnomalyDetector:
    """Impossible-travel heuristic over a user's recent logins.

    Advisory only: every failure path, from geolocation to corrupt history,
    resolves to "not suspicious".
    """

    def __init__(
        self,
        cache,
        resolver,
        *,
        window_minutes: int = 60,
        max_speed_kmh: float = 1000.0,
        max_events: int = 5,
        min_distance_km: float = 100.0,
        retention_hours: int = 24,
        history_size: int = 50,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.resolver = resolver
        self.window_seconds = window_minutes * 60
        self.max_speed_kmh = max_speed_kmh
        self.max_events = max_events
        self.min_distance_km = min_distance_km
        self.retention_seconds = retention_hours * 3600
        self.history_size = history_size
        self.now = now

    @classmethod
    def from_settings(cls, cache, resolver, settings, **kwargs) -> "AnomalyDetector":
        return cls(
            cache,
            resolver,
            window_minutes=settings.anomaly_window_minutes,
            max_speed_kmh=settings.anomaly_max_speed_kmh,
            max_events=settings.anomaly_max_events,
            min_distance_km=settings.anomaly_min_distance_km,
            retention_hours=settings.login_event_retention_hours,
            **kwargs,
        )

    @staticmethod
    def _key(user_id: str) -> str:
        return f"login_events:{user_id}"

    async def recent_events(self, user_id: str) -> List[LoginEvent]:
        """Most recent events inside the window, newest first."""
        try:
            raw_events = await self.cache.recent_events(self._key(user_id), self.history_size)
        except StoreUnavailable as exc:
            logger.warning("login_history_unavailable", user_id=user_id, error=str(exc))
            return []
        cutoff = self.now() - self.window_seconds
        events: List[LoginEvent] = []
        for raw in raw_events:
            try:
                event = LoginEvent.from_json(raw)
            except ValueError:
                logger.warning("login_event_malformed", user_id=user_id)
                continue
            if event.at.timestamp() >= cutoff:
                events.append(event)
        events.sort(key=lambda event: event.at, reverse=True)
        return events[: self.max_events]

    async def check(self, user_id: str, current_ip: str) -> AnomalyResult:
        location = await self.resolver.resolve(current_ip)
        current = location.coordinate
        if current is None:
            return AnomalyResult(suspicious=False)

        now = self.now()
        for event in await self.recent_events(user_id):
            if event.coordinate is None:
                continue
            distance = haversine_km(event.coordinate, current)
            if distance < self.min_distance_km:
                continue
            elapsed_hours = (now - event.at.timestamp()) / 3600
            if elapsed_hours <= 0:
                # Same instant but far apart: treat as at least one second
                elapsed_hours = 1 / 3600
            speed = distance / elapsed_hours
            if speed > self.max_speed_kmh:
                reason = f"Impossible travel detected: {distance:.0f}km in {elapsed_hours:.1f} hours"
                logger.warning(
                    "impossible_travel_detected",
                    user_id=user_id,
                    distance_km=round(distance),
                    speed_kmh=round(speed),
                )
                return AnomalyResult(suspicious=True, reason=reason, coordinate=current)
        return AnomalyResult(suspicious=False, coordinate=current)

    async def record_login(
        self,
        user_id: str,
        ip: str,
        coordinate: Optional[Coordinate] = None,
        at: Optional[datetime] = None,
    ) -> None:
        event = LoginEvent(
            user_id=user_id,
            ip=ip,
            at=at or datetime.fromtimestamp(self.now(), tz=timezone.utc),
            coordinate=coordinate,
        )
        try:
            await self.cache.push_event(
                self._key(user_id),
                event.to_json(),
                max_len=self.history_size,
                ttl_seconds=self.retention_seconds,
            )
        except StoreUnavailable as exc:
            logger.warning("login_event_record_failed", user_id=user_id, error=str(exc))
