"""
Broker clients used by reconciliation.

A client only has to list the broker's orders. Clients are registered per
project exchange; an exchange without a client is skipped by reconciliation.
"""
from typing import Any, Dict, List, Optional

import httpx

from exceptions import ExternalSystemError
from logging_config import get_logger
from settings import Settings

logger = get_logger(__name__)


class BrokerClient:
    """Port: list orders known to the broker."""

    name = "broker"

    async def get_orders(self, status: str = "all", limit: int = 500) -> List[Dict[str, Any]]:
        raise NotImplementedError


class AlpacaBrokerClient(BrokerClient):
    """Alpaca trading API: GET /v2/orders"""

    name = "alpaca"

    def __init__(
        self,
        base_url: str,
        key_id: str,
        secret_key: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {
            "APCA-API-KEY-ID": key_id,
            "APCA-API-SECRET-KEY": secret_key,
        }
        self.timeout = timeout
        self._transport = transport

    async def get_orders(self, status: str = "all", limit: int = 500) -> List[Dict[str, Any]]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get("/v2/orders", params={"status": status, "limit": limit})
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalSystemError(
                self.name, f"GET /v2/orders returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalSystemError(self.name, f"GET /v2/orders failed: {e}") from e

        if not isinstance(payload, list):
            raise ExternalSystemError(self.name, "unexpected orders payload")

        logger.debug("broker_orders_fetched", broker=self.name, count=len(payload))
        return payload


def build_broker_registry(settings: Settings) -> Dict[str, BrokerClient]:
    """Exchange name -> client, for the brokers that have credentials configured."""
    registry: Dict[str, BrokerClient] = {}
    if settings.alpaca_configured:
        registry["alpaca"] = AlpacaBrokerClient(
            base_url=settings.alpaca_base_url,
            key_id=settings.alpaca_key_id,
            secret_key=settings.alpaca_secret_key,
            timeout=settings.broker_timeout_seconds,
        )
    else:
        logger.warning("broker_not_configured", broker="alpaca")
    return registry
