"""
Retell AI API client for placing outbound calls and fetching call status.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx
import structlog

from call_reconciler.config import Settings
from call_reconciler.models import Contact, Tenant

log = structlog.get_logger(__name__)


class ProviderError(Exception):
    """The voice provider rejected a request or returned something unusable."""


class VoiceProvider(Protocol):
    async def place_call(self, tenant: Tenant, contact: Contact, context: dict[str, Any]) -> str:
        ...

    async def get_call_status(self, tenant: Tenant, provider_call_id: str) -> dict[str, Any]:
        ...


class RetellClient:
    """Async client for the Retell voice AI platform."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_url = settings.retell_base_url.rstrip("/")
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.settings.provider_timeout_seconds,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    def _auth(self, tenant: Tenant) -> dict[str, str]:
        api_key = tenant.retell_api_key or self.settings.retell_api_key
        if not api_key:
            raise ProviderError(f"No Retell API key configured for tenant {tenant.id}")
        return {"Authorization": f"Bearer {api_key}"}

    async def _request(self, method: str, url: str, tenant: Tenant, **kwargs) -> dict[str, Any]:
        client = await self._client()
        resp = await client.request(method, url, headers=self._auth(tenant), **kwargs)
        if resp.status_code >= 400:
            raise ProviderError(f"Retell API error: {resp.status_code} - {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"Retell API returned a non-JSON body: {resp.text[:200]}") from e
        if not isinstance(data, dict):
            raise ProviderError("Retell API returned a non-object body")
        return data

    # ── Outbound calls ──────────────────────────────────────────

    async def place_call(self, tenant: Tenant, contact: Contact, context: dict[str, Any]) -> str:
        """
        Place an outbound call via Retell.

        ``context`` becomes the agent's dynamic variables; only identifiers go
        into ``metadata`` so no personal data is echoed back in webhooks.
        Returns the provider call id.
        """
        payload = {
            "from_number": tenant.from_number or self.settings.retell_from_number,
            "to_number": contact.phone,
            "override_agent_id": tenant.retell_agent_id or self.settings.retell_agent_id,
            "retell_llm_dynamic_variables": {k: str(v) for k, v in context.items() if v is not None},
            "metadata": {
                "tenant_id": tenant.id,
                "contact_id": contact.id,
                "task_id": context.get("task_id", ""),
            },
        }

        log.info(
            "placing_call",
            tenant_id=tenant.id,
            contact_id=contact.id,
            variables=sorted(payload["retell_llm_dynamic_variables"]),
        )

        data = await self._request("POST", "/v2/create-phone-call", tenant, json=payload)
        call_id = data.get("call_id")
        if not call_id:
            raise ProviderError("Retell create-phone-call response has no call_id")
        log.info("call_placed", call_id=call_id, status=data.get("call_status"))
        return str(call_id)

    async def get_call_status(self, tenant: Tenant, provider_call_id: str) -> dict[str, Any]:
        """Fetch the current call object from Retell."""
        return await self._request("GET", f"/v2/get-call/{provider_call_id}", tenant)
