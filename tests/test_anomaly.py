"""Impossible-travel detection over recorded login history."""

from datetime import datetime, timezone

import pytest

from boxoffice.service.anomaly import AnomalyDetector, haversine_km
from boxoffice.service.geolocation import GeoLocation
from boxoffice.storage.models import Coordinate

NEW_YORK = Coordinate(40.7128, -74.0060, city="New York", country="United States")
BROOKLYN = Coordinate(40.6782, -73.9442, city="Brooklyn", country="United States")
TOKYO = Coordinate(35.6762, 139.6503, city="Tokyo", country="Japan")
BOSTON = Coordinate(42.3601, -71.0589, city="Boston", country="United States")


class FakeResolver:
    def __init__(self, mapping):
        self.mapping = mapping

    async def resolve(self, ip):
        coordinate = self.mapping.get(ip)
        if coordinate is None:
            return GeoLocation(ip=ip, country="Unknown", country_code="XX", city="Unknown")
        return GeoLocation(
            ip=ip,
            country=coordinate.country,
            city=coordinate.city,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
        )


IPS = {
    "8.8.8.8": NEW_YORK,
    "8.8.4.4": BROOKLYN,
    "1.1.1.1": TOKYO,
    "9.9.9.9": BOSTON,
}


@pytest.fixture
def detector(cache, clock):
    return AnomalyDetector(cache, FakeResolver(IPS), now=clock)


def _at(clock):
    return datetime.fromtimestamp(clock(), tz=timezone.utc)


class TestHaversine:
    def test_known_distance(self):
        assert haversine_km(NEW_YORK, TOKYO) == pytest.approx(10850, rel=0.01)

    def test_zero_distance(self):
        assert haversine_km(NEW_YORK, NEW_YORK) == 0


class TestAnomalyDetector:
    async def test_first_login_is_never_suspicious(self, detector):
        result = await detector.check("user-1", "1.1.1.1")
        assert not result.suspicious
        assert result.coordinate == TOKYO

    async def test_new_york_to_tokyo_in_fifty_minutes(self, detector, clock):
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        clock.advance(50 * 60)
        result = await detector.check("user-1", "1.1.1.1")
        assert result.suspicious
        assert result.reason.startswith("Impossible travel detected: ")
        assert result.reason.endswith("km in 0.8 hours")

    async def test_nearby_login_is_ignored(self, detector, clock):
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        clock.advance(60)
        assert not (await detector.check("user-1", "8.8.4.4")).suspicious

    async def test_plausible_speed_is_not_flagged(self, detector, clock):
        # About 300km in 59 minutes is a fast train, not teleportation
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        clock.advance(59 * 60)
        assert not (await detector.check("user-1", "9.9.9.9")).suspicious

    async def test_events_outside_window_are_ignored(self, detector, clock):
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        clock.advance(61 * 60)
        assert not (await detector.check("user-1", "1.1.1.1")).suspicious

    async def test_simultaneous_far_logins(self, detector, clock):
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        assert (await detector.check("user-1", "1.1.1.1")).suspicious

    async def test_unresolvable_ip_is_not_suspicious(self, detector, clock):
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        result = await detector.check("user-1", "5.5.5.5")
        assert not result.suspicious
        assert result.coordinate is None

    async def test_malformed_history_is_skipped(self, detector, cache, clock):
        await cache.push_event("login_events:user-1", "{garbage", max_len=50, ttl_seconds=3600)
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        await cache.push_event("login_events:user-1", "[]", max_len=50, ttl_seconds=3600)
        events = await detector.recent_events("user-1")
        assert len(events) == 1
        assert events[0].coordinate == NEW_YORK

    async def test_only_most_recent_events_considered(self, cache, clock):
        detector = AnomalyDetector(cache, FakeResolver(IPS), max_events=2, now=clock)
        await detector.record_login("user-1", "1.1.1.1", TOKYO, _at(clock))
        clock.advance(60)
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        clock.advance(60)
        await detector.record_login("user-1", "8.8.4.4", BROOKLYN, _at(clock))
        clock.advance(60)
        # The Tokyo login is the third most recent and falls outside the cap
        assert not (await detector.check("user-1", "8.8.8.8")).suspicious

    async def test_history_is_per_user(self, detector, clock):
        await detector.record_login("user-1", "8.8.8.8", NEW_YORK, _at(clock))
        assert not (await detector.check("user-2", "1.1.1.1")).suspicious
