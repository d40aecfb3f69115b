import logging
from typing import Optional

import httpx

logger = logging.getLogger("portbroker-server")


async def get_external_ip(url: str = "https://ipinfo.io/json", timeout: float = 5.0,
                          transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[str]:
    """Fetch this host's external IP from an ipinfo-style JSON endpoint.

    Returns None when the lookup fails; the caller only uses it for display.
    """
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            return response.json().get("ip")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"     Error fetching external IP from {url}: {e}")
            return None
