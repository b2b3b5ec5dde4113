from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .logs import log_event


logger = logging.getLogger(__name__)

# Fields /create-agent forwards to the platform; anything else in the request is ignored.
AGENT_FIELDS: tuple[str, ...] = (
    "llm_websocket_url",
    "agent_name",
    "voice_id",
    "fallback_voice_ids",
    "voice_temperature",
    "voice_speed",
    "responsiveness",
    "interruption_sensitivity",
    "enable_backchannel",
    "backchannel_frequency",
    "backchannel_words",
    "reminder_trigger_ms",
    "reminder_max_count",
    "ambient_sound",
    "ambient_sound_volume",
    "language",
    "webhook_url",
    "boosted_keywords",
    "opt_out_sensitive_data_storage",
    "pronunciation_dictionary",
    "normalize_for_speech",
    "end_call_after_silence_ms",
)


class RetellAPIError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RetellAPI:
    """
    Thin async client for the platform's call-management REST API.

    `transport` is only for tests (httpx.MockTransport); production uses the default.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.retellai.com",
        timeout_ms: int = 15000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = max(1.0, int(timeout_ms) / 1000.0)
        self._transport = transport

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        if not self._api_key:
            raise RetellAPIError("RETELL_API_KEY is not configured")
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    path,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
            except httpx.RequestError as e:
                log_event(
                    logger,
                    "retell_api_unreachable",
                    component="retell_api",
                    level=logging.ERROR,
                    path=path,
                    error=str(e),
                )
                raise RetellAPIError(f"request to {path} failed: {e}") from e

        if response.status_code >= 400:
            log_event(
                logger,
                "retell_api_error",
                component="retell_api",
                level=logging.ERROR,
                path=path,
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise RetellAPIError(
                f"{path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError as e:
            raise RetellAPIError(f"{path} returned a non-JSON body", status_code=response.status_code) from e

    async def create_web_call(self, *, agent_id: str) -> Any:
        return await self._post("/v2/create-web-call", {"agent_id": agent_id})

    async def create_agent(self, fields: dict[str, Any]) -> Any:
        payload = {k: fields[k] for k in AGENT_FIELDS if k in fields}
        return await self._post("/create-agent", payload)
