from __future__ import annotations

import ipaddress
import logging

import httpx

from app.models import GeoInfo

logger = logging.getLogger(__name__)


def is_public_ip(value: str | None) -> bool:
    if not value:
        return False
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return False
    return addr.is_global


class GeoLocator:
    """Best-effort IP geolocation for journal enrichment."""

    def __init__(
        self,
        url_template: str,
        *,
        timeout: float = 3.0,
        enabled: bool = True,
        max_cache: int = 2048,
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self.enabled = enabled
        self.max_cache = max_cache
        self._cache: dict[str, GeoInfo] = {}
        self._client: httpx.AsyncClient | None = None

    @property
    def cached(self) -> int:
        return len(self._cache)

    @property
    def has_client(self) -> bool:
        return self._client is not None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def lookup(self, ip: str | None) -> GeoInfo | None:
        if not self.enabled or not is_public_ip(ip):
            return None
        if ip in self._cache:
            return self._cache[ip]
        try:
            resp = await self._get_client().get(self.url_template.format(ip=ip))
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("geo lookup for %s failed: %s", ip, exc)
            return None
        if not isinstance(data, dict) or data.get("status", "success") != "success":
            return None
        info = GeoInfo(
            country=data.get("country"),
            region=data.get("regionName") or data.get("region"),
            city=data.get("city"),
            isp=data.get("isp"),
        )
        if len(self._cache) >= self.max_cache:
            self._cache.pop(next(iter(self._cache)))
        self._cache[ip] = info
        return info

    def clear_cache(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        return count

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


__all__ = ["GeoLocator", "is_public_ip"]
