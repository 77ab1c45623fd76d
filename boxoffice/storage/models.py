from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CredentialRecord:
    """One back-office account as seen by the auth subsystem."""

    id: str
    email: str
    password_hash: Optional[str] = None
    role: str = "STAFF"
    is_active: bool = True
    token_version: int = 1
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, password_hash: Optional[str] = None, **kwargs) -> "CredentialRecord":
        return cls(id=str(uuid.uuid4()), email=email, password_hash=password_hash, **kwargs)

    @property
    def two_factor_pending(self) -> bool:
        return bool(self.two_factor_secret) and not self.two_factor_enabled


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float
    city: Optional[str] = None
    country: Optional[str] = None


@dataclass
class LoginEvent:
    user_id: str
    ip: str
    at: datetime
    coordinate: Optional[Coordinate] = None

    def to_json(self) -> str:
        payload = {"user_id": self.user_id, "ip": self.ip, "at": self.at.timestamp()}
        if self.coordinate:
            payload["lat"] = self.coordinate.latitude
            payload["lon"] = self.coordinate.longitude
            payload["city"] = self.coordinate.city
            payload["country"] = self.coordinate.country
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "LoginEvent":
        """Parse a stored event; raises ``ValueError`` on malformed input."""
        try:
            data = json.loads(raw)
            at = datetime.fromtimestamp(float(data["at"]), tz=timezone.utc)
            coordinate = None
            lat, lon = data.get("lat"), data.get("lon")
            if lat is not None and lon is not None:
                coordinate = Coordinate(
                    latitude=float(lat),
                    longitude=float(lon),
                    city=data.get("city"),
                    country=data.get("country"),
                )
            return cls(user_id=str(data["user_id"]), ip=str(data.get("ip", "")), at=at, coordinate=coordinate)
        except (TypeError, KeyError, AttributeError, json.JSONDecodeError) as exc:
            raise ValueError(f"malformed login event: {exc}") from exc
