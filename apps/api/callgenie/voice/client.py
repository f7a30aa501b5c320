from __future__ import annotations

import logging
import time
from collections.abc import Generator
from typing import Any, Protocol

import httpx

from callgenie.core.config import Settings, get_settings
from callgenie.metrics import observe_voice_provider_request
from callgenie.otel import voice_provider_span
from callgenie.voice.errors import VoiceProviderConfigError, VoiceProviderError


logger = logging.getLogger("app.voice")


class VoiceCallClient(Protocol):
    def create_phone_call(
        self,
        *,
        from_number: str,
        to_number: str,
        agent_id: str,
        dynamic_variables: dict[str, str],
    ) -> dict[str, Any]: ...

    def retrieve_call(self, call_id: str) -> dict[str, Any]: ...

    def create_batch_call(
        self,
        *,
        from_number: str,
        tasks: list[dict[str, Any]],
        name: str | None = None,
        trigger_timestamp: int | None = None,
    ) -> dict[str, Any]: ...


class RetellClient:
    """Thin synchronous client for the Retell REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.retellai.com",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> RetellClient:
        return cls(
            api_key=settings.retell_api_key,
            base_url=settings.retell_base_url,
            timeout=settings.retell_timeout_seconds,
        )

    def close(self) -> None:
        self._http.close()

    def create_phone_call(
        self,
        *,
        from_number: str,
        to_number: str,
        agent_id: str,
        dynamic_variables: dict[str, str],
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "from_number": from_number,
            "to_number": to_number,
            "retell_llm_dynamic_variables": dynamic_variables,
        }
        if agent_id:
            body["override_agent_id"] = agent_id
        return self._request("create_phone_call", "POST", "/v2/create-phone-call", json=body)

    def retrieve_call(self, call_id: str) -> dict[str, Any]:
        return self._request("retrieve_call", "GET", f"/v2/get-call/{call_id}")

    def create_batch_call(
        self,
        *,
        from_number: str,
        tasks: list[dict[str, Any]],
        name: str | None = None,
        trigger_timestamp: int | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"from_number": from_number, "tasks": tasks}
        if name:
            body["name"] = name
        if trigger_timestamp is not None:
            body["trigger_timestamp"] = trigger_timestamp
        return self._request("create_batch_call", "POST", "/create-batch-call", json=body)

    def _request(self, operation: str, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.api_key:
            raise VoiceProviderConfigError(operation, "RETELL_API_KEY")

        with voice_provider_span(operation, method=method, path=path) as span:
            started = time.perf_counter()
            try:
                response = self._http.request(method, path, json=json)
            except httpx.HTTPError as exc:
                observe_voice_provider_request(operation, "transport_error", time.perf_counter() - started)
                logger.warning("voice.request_failed", extra={"operation": operation, "error": repr(exc)})
                raise VoiceProviderError(operation, f"{operation} failed: {exc}") from exc

            duration = time.perf_counter() - started
            span.set_attribute("http.status_code", response.status_code)
            if response.is_error:
                observe_voice_provider_request(operation, "http_error", duration)
                detail = _error_detail(response)
                logger.warning(
                    "voice.request_rejected",
                    extra={"operation": operation, "status_code": response.status_code, "error": detail},
                )
                raise VoiceProviderError(operation, f"{operation} failed: {detail}", status_code=response.status_code)

            observe_voice_provider_request(operation, "ok", duration)
            logger.info(
                "voice.request",
                extra={"operation": operation, "status_code": response.status_code, "duration_ms": round(duration * 1000, 2)},
            )
            payload = response.json()
            if not isinstance(payload, dict):
                raise VoiceProviderError(operation, f"{operation} returned a non-object payload")
            return payload


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            if payload.get(key):
                return str(payload[key])
    return str(payload)[:500]


def get_voice_client() -> Generator[VoiceCallClient, None, None]:
    client = RetellClient.from_settings(get_settings())
    try:
        yield client
    finally:
        client.close()
