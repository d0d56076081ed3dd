from __future__ import annotations

from typing import Any

import httpx
from fastapi import HTTPException, status

from whatsmetrics.core.settings import get_settings

ADMIN_USERS_PAGE_SIZE = 1000
ADMIN_USERS_MAX_PAGES = 50


def _service_role_key() -> str:
    settings = get_settings()
    key = settings.SUPABASE_SERVICE_ROLE_KEY
    if not key or not key.strip():
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Supabase admin auth is not configured.",
        )
    return key.strip()


def _admin_headers() -> dict[str, str]:
    key = _service_role_key()
    return {
        "Authorization": f"Bearer {key}",
        "apikey": key,
        "Accept": "application/json",
    }


def _extract_users(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("users")
    if not isinstance(payload, list):
        return []
    return [row for row in payload if isinstance(row, dict)]


async def list_users_page(page: int, *, per_page: int = ADMIN_USERS_PAGE_SIZE) -> list[dict[str, Any]]:
    settings = get_settings()
    url = f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1/admin/users"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                url,
                params={"page": str(page), "per_page": str(per_page)},
                headers=_admin_headers(),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to list users from Supabase Auth.",
        ) from exc

    return _extract_users(response.json())


async def find_user_by_email(email: str) -> dict[str, Any] | None:
    """Return the auth user whose email equals ``email`` exactly, or None."""
    if not email:
        return None

    for page in range(1, ADMIN_USERS_MAX_PAGES + 1):
        users = await list_users_page(page)
        for user in users:
            if user.get("email") == email:
                return user
        if len(users) < ADMIN_USERS_PAGE_SIZE:
            return None
    return None
