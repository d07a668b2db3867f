"""
NOTIFIER MODULE

Hands lifecycle events (all roles approved, stage promoted) to an outside
system. Called after the transaction commits; delivery failures never undo a
committed transition.
"""
from typing import Any, Dict, Optional

import httpx

from exceptions import ExternalSystemError
from logging_config import get_logger
from settings import Settings

logger = get_logger(__name__)

STAGE_APPROVED = "stage_approved"
STAGE_PROMOTED = "stage_promoted"


class Notifier:
    """Port for lifecycle notifications"""

    async def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):

    async def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.debug("notification_dropped", event_type=event_type)


class HttpNotifier(Notifier):
    """POSTs {"event": ..., "payload": ...} as JSON to a webhook"""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json={"event": event_type, "payload": payload})
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalSystemError("notifier", f"{event_type} delivery failed: {e}") from e

        logger.info("notification_sent", event_type=event_type)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier_url:
        return HttpNotifier(settings.notifier_url)
    return NullNotifier()
