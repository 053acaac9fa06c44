from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from elasticrooms.constants import NotificationKind
from elasticrooms.exceptions import NotificationError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 10.0
MAX_ATTEMPTS = 3


class _ServerError(Exception):
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


class LoggingNotifier:
    async def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None:
        logger.info("Room notification", user_id=user_id, kind=kind.value, **payload)


class WebhookNotifier:
    """POSTs split and merge notifications to a webhook.

    Transport errors and 5xx responses are retried with exponential backoff;
    anything still failing after the last attempt raises NotificationError.
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        wait: wait_base | None = None,
    ) -> None:
        self._url = url
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=10)

    async def _post(self, client: httpx.AsyncClient, body: dict[str, Any]) -> None:
        response = await client.post(self._url, json=body)
        if response.status_code >= 500:
            raise _ServerError(response.status_code)
        response.raise_for_status()

    async def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None:
        body = {"user_id": user_id, "kind": kind.value, **payload}
        client = None
        try:
            client = self._client or httpx.AsyncClient(timeout=self._timeout)
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
                wait=self._wait,
                stop=stop_after_attempt(self._max_attempts),
                reraise=True,
            ):
                with attempt:
                    await self._post(client, body)
        except _ServerError as e:
            logger.warning("Webhook server error", user_id=user_id, status=e.status_code)
            raise NotificationError(f"Webhook failed: HTTP {e.status_code}") from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Webhook rejected notification", user_id=user_id, status=e.response.status_code
            )
            raise NotificationError(f"Webhook failed: HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.warning("Webhook request error", user_id=user_id, error=str(e))
            raise NotificationError(f"Webhook failed: {e}") from e
        finally:
            if self._owns_client and client is not None:
                await client.aclose()

        logger.debug("Webhook notification sent", user_id=user_id, kind=kind.value)
