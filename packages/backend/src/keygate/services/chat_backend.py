"""Chat backend client — thin proxy to the external inference service.

Learn: The gateway does not interpret chat traffic. It forwards the
message to {base_url}/api/v1/prediction/{flow_id} with the caller's
subject injected as the userId variable, and returns the JSON answer.

Every call carries an explicit timeout. Timeouts, refused connections and
non-2xx answers all become GatewayUnavailable (502); the caller may retry.
"""

from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from keygate.config import Settings
from keygate.errors import GatewayUnavailable

logger = structlog.get_logger()


class ChatBackend:
    """HTTP client for the prediction API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatBackend":
        return cls(
            settings.chat_backend_url,
            api_key=settings.chat_backend_api_key,
            timeout=settings.upstream_timeout_seconds,
        )

    async def predict(
        self,
        flow_id: str,
        *,
        user_id: str,
        question: str,
        variables: Optional[dict[str, Any]] = None,
        override_config: Optional[dict[str, Any]] = None,
    ) -> Any:
        payload = {
            "question": question,
            # userId always comes from the verified token, never the caller
            "variables": {**(variables or {}), "userId": user_id},
            "overrideConfig": override_config or {},
        }
        url = f"/api/v1/prediction/{quote(flow_id, safe='')}"
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error("keygate.chat.timeout", flow_id=flow_id, error=str(e))
            raise GatewayUnavailable("Chat service timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "keygate.chat.upstream_status",
                flow_id=flow_id,
                status=e.response.status_code,
            )
            raise GatewayUnavailable() from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("keygate.chat.upstream_error", flow_id=flow_id, error=str(e))
            raise GatewayUnavailable() from e

    async def close(self) -> None:
        await self._client.aclose()
