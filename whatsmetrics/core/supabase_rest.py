from typing import Any

import httpx
from fastapi import HTTPException, status

from whatsmetrics.core.settings import get_settings

WORKSPACE_SUBSCRIPTION_COLUMNS = (
    "id,workspace_id,plan_id,stripe_customer_id,stripe_subscription_id,status,"
    "current_period_start,current_period_end,cancel_at_period_end,last_event_at"
)
EMAIL_JOB_COLUMNS = "id,to_email,type,payload,status,attempts,run_after,stripe_event_id"


def supabase_rest_headers(access_token: str) -> dict[str, str]:
    settings = get_settings()
    return {
        "Authorization": f"Bearer {access_token}",
        "apikey": settings.SUPABASE_ANON_KEY,
        "Accept": "application/json",
    }


def supabase_service_role_headers() -> dict[str, str]:
    settings = get_settings()
    service_role_key = settings.SUPABASE_SERVICE_ROLE_KEY
    if not service_role_key or not service_role_key.strip():
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Supabase service role is not configured.",
        )
    return {
        "Authorization": f"Bearer {service_role_key}",
        "apikey": service_role_key,
        "Accept": "application/json",
    }


def _rest_url(table: str) -> str:
    settings = get_settings()
    return f"{settings.SUPABASE_URL.rstrip('/')}/rest/v1/{table}"


def _supabase_error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None

    if not isinstance(payload, dict):
        return None

    for field in ("message", "detail", "hint"):
        detail = payload.get(field)
        if isinstance(detail, str) and detail:
            return detail
    return None


def _validated_rows(payload: Any, error_message: str) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_message)
    for item in payload:
        if not isinstance(item, dict):
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_message)
    return payload


async def _service_role_select(
    table: str,
    params: dict[str, str],
    *,
    error_detail: str,
) -> list[dict[str, Any]]:
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                _rest_url(table),
                params=params,
                headers=supabase_service_role_headers(),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

    return _validated_rows(response.json(), error_detail)


async def _service_role_patch(
    table: str,
    filters: dict[str, str],
    payload: dict[str, Any],
    *,
    error_detail: str,
) -> list[dict[str, Any]]:
    headers = supabase_service_role_headers()
    headers["Prefer"] = "return=representation"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.patch(_rest_url(table), params=filters, json=payload, headers=headers)
            if response.status_code >= 400:
                detail = _supabase_error_detail(response)
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    detail=f"{error_detail} {detail}" if detail else error_detail,
                )
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

    return _validated_rows(response.json(), error_detail)


async def _service_role_insert(
    table: str,
    payload: dict[str, Any],
    *,
    error_detail: str,
    conflict_column: str | None = None,
) -> dict[str, Any] | None:
    headers = supabase_service_role_headers()
    params: dict[str, str] = {}
    if conflict_column:
        headers["Prefer"] = "resolution=merge-duplicates,return=representation"
        params["on_conflict"] = conflict_column
    else:
        headers["Prefer"] = "return=representation"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(_rest_url(table), params=params, json=payload, headers=headers)
            if response.status_code >= 400:
                detail = _supabase_error_detail(response)
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    detail=f"{error_detail} {detail}" if detail else error_detail,
                )
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

    rows = _validated_rows(response.json(), error_detail)
    return rows[0] if rows else None


# Tenant directory


async def select_profile_workspace_id(user_id: str) -> str | None:
    rows = await _service_role_select(
        "profiles",
        {"select": "current_workspace_id", "user_id": f"eq.{user_id}", "limit": "1"},
        error_detail="Failed to fetch profile from Supabase.",
    )
    if not rows:
        return None
    workspace_id = rows[0].get("current_workspace_id")
    return workspace_id if isinstance(workspace_id, str) and workspace_id else None


async def select_owned_workspace_id(user_id: str) -> str | None:
    rows = await _service_role_select(
        "workspaces",
        {"select": "id", "owner_id": f"eq.{user_id}", "order": "created_at.asc", "limit": "1"},
        error_detail="Failed to fetch workspaces from Supabase.",
    )
    if not rows:
        return None
    workspace_id = rows[0].get("id")
    return workspace_id if isinstance(workspace_id, str) and workspace_id else None


# Subscription store


async def select_plan_id_by_slug(slug: str) -> str | None:
    rows = await _service_role_select(
        "subscription_plans",
        {"select": "id", "slug": f"eq.{slug}", "limit": "1"},
        error_detail="Failed to fetch subscription plan from Supabase.",
    )
    if not rows:
        return None
    plan_id = rows[0].get("id")
    return str(plan_id) if plan_id else None


async def select_workspace_subscription_service(workspace_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "workspace_subscriptions",
        {
            "select": WORKSPACE_SUBSCRIPTION_COLUMNS,
            "workspace_id": f"eq.{workspace_id}",
            "limit": "1",
        },
        error_detail="Failed to fetch workspace subscription from Supabase.",
    )
    return rows[0] if rows else None


async def insert_workspace_subscription(payload: dict[str, Any]) -> dict[str, Any] | None:
    return await _service_role_insert(
        "workspace_subscriptions",
        payload,
        error_detail="Failed to create workspace subscription.",
    )


async def update_workspace_subscription(row_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    rows = await _service_role_patch(
        "workspace_subscriptions",
        {"id": f"eq.{row_id}"},
        payload,
        error_detail="Failed to update workspace subscription.",
    )
    return rows[0] if rows else None


async def update_subscriptions_by_stripe_id(
    stripe_subscription_id: str,
    payload: dict[str, Any],
) -> list[dict[str, Any]]:
    return await _service_role_patch(
        "workspace_subscriptions",
        {"stripe_subscription_id": f"eq.{stripe_subscription_id}"},
        payload,
        error_detail="Failed to update workspace subscription status.",
    )


async def select_workspace_subscription(access_token: str, workspace_id: str) -> dict[str, Any] | None:
    params = {
        "select": WORKSPACE_SUBSCRIPTION_COLUMNS,
        "workspace_id": f"eq.{workspace_id}",
        "limit": "1",
    }

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                _rest_url("workspace_subscriptions"),
                params=params,
                headers=supabase_rest_headers(access_token),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to fetch workspace subscription from Supabase.",
        ) from exc

    rows = _validated_rows(response.json(), "Invalid workspace subscription response from Supabase.")
    return rows[0] if rows else None


async def select_plan_slug_by_id(access_token: str, plan_id: str) -> str | None:
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                _rest_url("subscription_plans"),
                params={"select": "slug", "id": f"eq.{plan_id}", "limit": "1"},
                headers=supabase_rest_headers(access_token),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to fetch subscription plan from Supabase.",
        ) from exc

    rows = _validated_rows(response.json(), "Invalid subscription plan response from Supabase.")
    if not rows:
        return None
    slug = rows[0].get("slug")
    return slug if isinstance(slug, str) else None


# Webhook event ledger


async def select_webhook_event(stripe_event_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "stripe_webhook_events",
        {
            "select": "stripe_event_id,event_type,status,error,processed_at",
            "stripe_event_id": f"eq.{stripe_event_id}",
            "limit": "1",
        },
        error_detail="Failed to fetch webhook event from Supabase.",
    )
    return rows[0] if rows else None


async def upsert_webhook_event(payload: dict[str, Any]) -> None:
    await _service_role_insert(
        "stripe_webhook_events",
        payload,
        conflict_column="stripe_event_id",
        error_detail="Failed to record webhook event.",
    )


# Notification outbox


async def insert_email_job(payload: dict[str, Any]) -> dict[str, Any] | None:
    return await _service_role_insert(
        "subscription_email_jobs",
        payload,
        error_detail="Failed to enqueue subscription email.",
    )


async def fetch_due_email_jobs(*, now_iso: str, limit: int = 50) -> list[dict[str, Any]]:
    return await _service_role_select(
        "subscription_email_jobs",
        {
            "select": EMAIL_JOB_COLUMNS,
            "status": "eq.queued",
            "run_after": f"lte.{now_iso}",
            "order": "run_after.asc",
            "limit": str(max(1, limit)),
        },
        error_detail="Failed to fetch subscription email jobs.",
    )


async def mark_email_job_running(job_id: str, attempts: int) -> None:
    await _service_role_patch(
        "subscription_email_jobs",
        {"id": f"eq.{job_id}"},
        {"status": "running", "attempts": attempts},
        error_detail="Failed to mark subscription email job running.",
    )


async def mark_email_job_sent(job_id: str, attempts: int, *, sent_at: str) -> None:
    await _service_role_patch(
        "subscription_email_jobs",
        {"id": f"eq.{job_id}"},
        {"status": "sent", "attempts": attempts, "last_error": None, "sent_at": sent_at},
        error_detail="Failed to mark subscription email job sent.",
    )


async def mark_email_job_failed(
    job_id: str,
    attempts: int,
    last_error: str | None,
    *,
    run_after: str | None = None,
    terminal: bool = False,
) -> None:
    payload: dict[str, Any] = {
        "status": "failed" if terminal else "queued",
        "attempts": attempts,
        "last_error": last_error,
    }
    if run_after and not terminal:
        payload["run_after"] = run_after
    await _service_role_patch(
        "subscription_email_jobs",
        {"id": f"eq.{job_id}"},
        payload,
        error_detail="Failed to mark subscription email job failed.",
    )
