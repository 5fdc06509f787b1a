# src/threat_monitor/geolocation.py
"""
IP geolocation lookups used during event enrichment.

Lookups are best-effort: any failure yields None and the event is simply
dispatched without a location.
"""

import ipaddress
import logging
import threading
from typing import Dict, Optional

import requests

from .event import Geolocation

logger = logging.getLogger(__name__)


class GeoLocator:
    """Lookup contract: ``resolve(ip) -> Geolocation | None``."""

    def resolve(self, ip: str) -> Optional[Geolocation]:
        raise NotImplementedError


class NullGeoLocator(GeoLocator):
    """Locator used when geolocation is disabled."""

    def resolve(self, ip: str) -> Optional[Geolocation]:
        return None


class StaticGeoLocator(GeoLocator):
    """Fixed ip -> location table, handy for tests and air-gapped deployments."""

    def __init__(self, table: Dict[str, Geolocation]) -> None:
        self.table = dict(table)

    def resolve(self, ip: str) -> Optional[Geolocation]:
        return self.table.get(ip)


class IpApiGeoLocator(GeoLocator):
    """
    Geolocation through the ip-api.com JSON endpoint.

    Private, loopback and malformed addresses are never sent upstream.
    Successful answers are cached for the process lifetime.
    """

    def __init__(self, url_template: str = "http://ip-api.com/json/{ip}",
                 timeout: float = 5.0, max_cache: int = 1000) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self.max_cache = max_cache
        self._cache: Dict[str, Geolocation] = {}
        self._cache_lock = threading.Lock()

    @staticmethod
    def _is_routable(ip: str) -> bool:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return not (addr.is_private or addr.is_loopback or addr.is_reserved
                    or addr.is_link_local or addr.is_multicast)

    def resolve(self, ip: str) -> Optional[Geolocation]:
        if not self._is_routable(ip):
            return None

        with self._cache_lock:
            cached = self._cache.get(ip)
        if cached is not None:
            return cached

        try:
            response = requests.get(self.url_template.format(ip=ip), timeout=self.timeout)
            if response.status_code != 200:
                return None
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug("Geolocation lookup failed for %s: %s", ip, e)
            return None

        if data.get("status") != "success":
            return None

        location = Geolocation(
            country=data.get("countryCode"),
            region=data.get("regionName"),
            city=data.get("city"),
            lat=data.get("lat"),
            lon=data.get("lon"),
        )
        with self._cache_lock:
            if len(self._cache) < self.max_cache:
                self._cache[ip] = location
        return location
