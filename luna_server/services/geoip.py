# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Country lookup for sign-up IP addresses (ip-api.com). Best-effort."""

import ipaddress
import logging
from dataclasses import dataclass

import httpx

from luna_server.config import settings

logger = logging.getLogger(__name__)

IP_API_URL = "http://ip-api.com/json/"


@dataclass(frozen=True)
class GeoInfo:
    country_code: str
    country: str


def is_public_ip(ip: str | None) -> bool:
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_global


class GeoIpService:
    """Resolves an IP to a country. Never raises; returns None when unknown."""

    async def lookup(self, ip: str | None) -> GeoInfo | None:
        if not settings.geoip_enabled or not is_public_ip(ip):
            logger.debug("Skipping GeoIP lookup for %s", ip)
            return None
        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
                r = await client.get(IP_API_URL + ip, params={"fields": "status,country,countryCode"})
                r.raise_for_status()
                data = r.json()
        except Exception as e:
            logger.warning("GeoIP lookup failed for %s: %s", ip, e)
            return None
        if data.get("status") != "success" or not data.get("countryCode"):
            return None
        return GeoInfo(country_code=data["countryCode"], country=data.get("country") or "")
