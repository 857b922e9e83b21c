from __future__ import annotations

import ipaddress
from typing import Mapping, Optional, Protocol

from sessionguard.logging import get_logger
from sessionguard.storage.models import Coordinates, GeolocationContext

logger = get_logger(__name__)

DEVELOPMENT_LOCATION = GeolocationContext(
    country="BR",
    city="São Paulo",
    timezone="America/Sao_Paulo",
    coordinates=Coordinates(latitude=-23.5505, longitude=-46.6333),
)


class GeolocationResolver(Protocol):
    def resolve(self, ip_address: Optional[str]) -> Optional[GeolocationContext]:
        ...


class NullGeolocationResolver:
    """Resolver used when no geolocation source is configured."""

    def resolve(self, ip_address: Optional[str]) -> Optional[GeolocationContext]:
        return None


class StaticGeolocationResolver:
    """Returns a fixed location for public addresses.

    For local development and tests only. Loopback, private and malformed
    addresses resolve to None; ``overrides`` maps specific addresses to
    their own locations.
    """

    def __init__(
        self,
        default: GeolocationContext = DEVELOPMENT_LOCATION,
        overrides: Optional[Mapping[str, GeolocationContext]] = None,
    ) -> None:
        self.default = default
        self.overrides = dict(overrides or {})

    def resolve(self, ip_address: Optional[str]) -> Optional[GeolocationContext]:
        if not ip_address or ip_address == "unknown":
            return None
        try:
            parsed = ipaddress.ip_address(ip_address)
        except ValueError:
            logger.debug("geolocation_invalid_ip")
            return None
        if parsed.is_loopback or parsed.is_private:
            return None
        return self.overrides.get(str(parsed), self.default)


def format_location(geolocation: Optional[GeolocationContext]) -> str:
    if geolocation is None:
        return "Unknown Location"
    if geolocation.country and geolocation.city:
        return f"{geolocation.city}, {geolocation.country}"
    return geolocation.country or geolocation.city or "Unknown Location"
