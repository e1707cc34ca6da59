"""IP geolocation for discovered peers.

Looks peers up against the ip-api.com JSON endpoint. The free endpoint is
rate limited (45 requests/minute), so :meth:`IPGeoLookup.lookup_many` goes
one address at a time with a pause in between.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_GEO_URL = "http://ip-api.com/json"


class GeoLookupError(Exception):
    """A single address could not be geolocated."""


@dataclass
class GeoInfo:
    ip: str
    country: str = ""
    country_code: str = ""
    region: str = ""
    city: str = ""
    isp: str = ""
    org: str = ""
    asn: str = ""
    lat: float | None = None
    lon: float | None = None

    @classmethod
    def from_api(cls, ip: str, data: dict[str, Any]) -> GeoInfo:
        return cls(
            ip=data.get("query") or ip,
            country=data.get("country", ""),
            country_code=data.get("countryCode", ""),
            region=data.get("regionName", ""),
            city=data.get("city", ""),
            isp=data.get("isp", ""),
            org=data.get("org", ""),
            asn=data.get("as", ""),
            lat=data.get("lat"),
            lon=data.get("lon"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class IPGeoLookup:
    """Async client for the ip-api.com lookup endpoint.

    Call :meth:`aclose` (or use as an async context manager) when done.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GEO_URL,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "IPGeoLookup":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def lookup(self, ip: str) -> GeoInfo:
        """Geolocate a single address.

        Raises:
            GeoLookupError: network failure, HTTP error, or a ``fail`` status.
        """
        url = f"{self.base_url}/{ip}"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise GeoLookupError(f"Error looking up IP {ip}: {exc}") from exc

        if data.get("status") == "fail":
            raise GeoLookupError(f"Error looking up IP {ip}: {data.get('message', 'unknown')}")
        return GeoInfo.from_api(ip, data)

    async def lookup_many(
        self,
        ips: Iterable[str],
        delay: float = 1.0,
    ) -> dict[str, GeoInfo | None]:
        """Geolocate *ips* sequentially, sleeping *delay* seconds between calls.

        Failed lookups are logged and map to ``None``.
        """
        results: dict[str, GeoInfo | None] = {}
        pending = list(dict.fromkeys(ips))
        for i, ip in enumerate(pending):
            try:
                results[ip] = await self.lookup(ip)
            except GeoLookupError as exc:
                logger.warning("%s", exc)
                results[ip] = None
            if delay > 0 and i < len(pending) - 1:
                await asyncio.sleep(delay)
        return results
