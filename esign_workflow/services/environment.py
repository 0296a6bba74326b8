"""Server-side environment lookups for technical evidence"""

import asyncio
import logging
from typing import Optional

import aiohttp

from esign_workflow.models.audit import Geolocation
from esign_workflow.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

FALLBACK_IP = "127.0.0.1"


class EnvironmentProbe:
    """Looks up the public IP and, optionally, a coarse geolocation.

    Both lookups are best effort: the IP falls back to ``127.0.0.1`` and
    geolocation to ``None``. The public IP is cached after the first
    successful lookup.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._public_ip: Optional[str] = None

    async def public_ip(self) -> str:
        if self._public_ip:
            return self._public_ip
        url = self.settings.ip_lookup_url
        if not url:
            return FALLBACK_IP
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=5)) as response:
                    if response.status != 200:
                        return FALLBACK_IP
                    data = await response.json(content_type=None)
            if not isinstance(data, dict) or not data.get("ip"):
                logger.warning(f"Public IP lookup returned no address: {data!r}")
                return FALLBACK_IP
            self._public_ip = str(data["ip"])
            return self._public_ip
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Public IP lookup failed: {e}")
            return FALLBACK_IP

    async def geolocation(self, ip_address: str) -> Optional[Geolocation]:
        if not self.settings.geolocation_enabled or not ip_address or ip_address == FALLBACK_IP:
            return None
        url = self.settings.geolocation_url.format(ip=ip_address)
        timeout = aiohttp.ClientTimeout(total=self.settings.geolocation_timeout)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=timeout) as response:
                    if response.status != 200:
                        return None
                    data = await response.json(content_type=None)
            if not isinstance(data, dict):
                return None
            if data.get("latitude") is None or data.get("longitude") is None:
                return None
            return Geolocation(
                latitude=float(data["latitude"]),
                longitude=float(data["longitude"]),
                accuracy=float(data.get("accuracy") or 0.0),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError) as e:
            logger.warning(f"Geolocation lookup failed for {ip_address}: {e}")
            return None
