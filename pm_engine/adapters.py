"""
HTTP adapters for the collaborator ports.

- WebhookMessenger: MessagingPort posting JSON to a webhook
- LoggingMessenger: MessagingPort used when no webhook is configured
- HttpDashboardClient: DashboardPort over a REST dashboard API
  (goals at {base}/goals/{id}, operations tasks at {base}/tasks/{id})

Each call opens a short-lived httpx.AsyncClient. Non-2xx responses other
than 404 raise; the reconciliation loop and the cascade catch and log.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .models import Goal, GoalStatus
from .ports import DashboardPort, MessagingPort

logger = logging.getLogger("pm_adapters")

DEFAULT_TIMEOUT = 10.0


class WebhookMessenger(MessagingPort):
    """Delivers owner messages as `{"owner_id", "text", **opts}` JSON posts."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    async def send_to_owner(self, owner_id: str, text: str, **opts: Any) -> None:
        payload = {"owner_id": owner_id, "text": text, **opts}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        logger.debug(f"Delivered {opts.get('kind', 'message')} to {owner_id}")


class LoggingMessenger(MessagingPort):
    """Writes owner messages to the log only."""

    async def send_to_owner(self, owner_id: str, text: str, **opts: Any) -> None:
        logger.info(f"[{opts.get('kind', 'message')} -> {owner_id}]\n{text}")


class HttpDashboardClient(DashboardPort):
    """REST client for dashboard goals and operations tasks."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self.headers,
            transport=self._transport,
        )

    async def _get(self, path: str) -> Optional[Dict[str, Any]]:
        async with self._client() as client:
            response = await client.get(path)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

    async def _patch(self, path: str, fields: Dict[str, Any]) -> None:
        async with self._client() as client:
            response = await client.patch(path, json=fields)
            response.raise_for_status()

    # -------------------------------------------------------------------------
    # Goals
    # -------------------------------------------------------------------------

    async def get_goal(self, goal_id: str) -> Optional[Goal]:
        data = await self._get(f"/goals/{goal_id}")
        if data is None:
            return None
        return Goal(
            goal_id=data.get("id", goal_id),
            progress=int(data.get("progress", 0)),
            status=GoalStatus(data.get("status", GoalStatus.PENDING.value)),
            title=data.get("title", ""),
        )

    async def update_goal(self, goal_id: str, fields: Dict[str, Any]) -> None:
        await self._patch(f"/goals/{goal_id}", fields)
        logger.debug(f"Updated goal {goal_id}: {fields}")

    # -------------------------------------------------------------------------
    # Operations tasks
    # -------------------------------------------------------------------------

    async def get_ops_task(self, ops_task_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/tasks/{ops_task_id}")

    async def update_ops_task(self, ops_task_id: str, fields: Dict[str, Any]) -> None:
        await self._patch(f"/tasks/{ops_task_id}", fields)
        logger.debug(f"Updated operations task {ops_task_id}: {fields}")
