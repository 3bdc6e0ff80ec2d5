"""Accessors for the provider's call payload envelope."""

from __future__ import annotations

from typing import Any


def call_body(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the call object, whether the payload wraps it in ``call`` or is flat."""
    call = payload.get("call")
    return call if isinstance(call, dict) else payload


def provider_call_id_of(payload: dict[str, Any]) -> str:
    call = call_body(payload)
    return str(call.get("call_id") or payload.get("call_id") or "")
