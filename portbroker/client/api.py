import logging
from typing import Optional

import httpx

logger = logging.getLogger("portbroker-client")


class BrokerError(Exception):
    """Control plane answered with an error"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{message} (HTTP {status_code})")
        self.status_code = status_code
        self.message = message


class BrokerClient:
    """Thin client for the broker's control plane"""

    def __init__(self, server_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self._client = httpx.Client(base_url=self.server_url, timeout=timeout, transport=transport)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        logger.debug(f"{method} {self.server_url}{path}")
        try:
            response = self._client.request(method, path, json=json)
        except httpx.RequestError as e:
            raise BrokerError(0, f"Failed to reach {self.server_url}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200:
            message = data.get("error") if isinstance(data, dict) else None
            raise BrokerError(response.status_code, message or response.reason_phrase)
        return data

    def _require_key(self) -> str:
        if not self.api_key:
            raise BrokerError(0, "An API key is required (use --api-key or PORTBROKER_API_KEY)")
        return self.api_key

    def generate_api_key(self, user: str) -> str:
        return self._request("POST", "/generate-api-key", {"user": user})["apiKey"]

    def register(self, local_port: int) -> dict:
        return self._request("POST", "/register", {"apiKey": self._require_key(), "localPort": local_port})

    def stop(self, tunnel_id: str) -> dict:
        return self._request("POST", "/stop", {"apiKey": self._require_key(), "tunnelId": tunnel_id})

    def status(self, tunnel_id: str) -> dict:
        return self._request("GET", f"/status/{tunnel_id}")
