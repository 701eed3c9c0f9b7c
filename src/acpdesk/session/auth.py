"""Auth method helpers for the initialize/authenticate part of the handshake."""

from __future__ import annotations

from typing import Any

from acpdesk.session.models import AuthMethodInfo


def extract_auth_methods(init_result: Any) -> list[AuthMethodInfo]:
    """Read ``authMethods`` from an initialize result, skipping entries without an id."""
    if not isinstance(init_result, dict):
        return []
    raw = init_result.get("authMethods")
    if raw is None:
        raw = init_result.get("auth_methods")
    if not isinstance(raw, list):
        return []
    methods: list[AuthMethodInfo] = []
    for entry in raw:
        method = auth_method_info(entry)
        if method is not None:
            methods.append(method)
    return methods


def auth_method_info(entry: Any) -> AuthMethodInfo | None:
    if not isinstance(entry, dict):
        return None
    method_id = str(entry.get("id", "") or "").strip()
    if not method_id:
        return None
    name = str(entry.get("name", "") or "").strip() or method_id
    description = str(entry.get("description", "") or "").strip() or None
    return AuthMethodInfo(id=method_id, name=name, description=description)


def auth_methods_for_error(handshake_methods: list[AuthMethodInfo], error_data: Any) -> list[AuthMethodInfo]:
    """Prefer the narrower method list an auth-required error may carry."""
    narrowed = extract_auth_methods(error_data) if isinstance(error_data, dict) else []
    return narrowed or list(handshake_methods)
