from __future__ import annotations

from typing import Any

import pytest

from whatsmetrics.billing import reconciler, webhook

PREMIUM_PRODUCT = "prod_Tf0tDmMTZeQN1O"
PLAN_IDS = {"basic": "plan-basic", "professional": "plan-professional", "premium": "plan-premium"}


class FakeBillingStore:
    """In-memory stand-in for the Supabase tables the reconciler touches."""

    def __init__(self) -> None:
        self.users: dict[str, str] = {}
        self.profile_workspaces: dict[str, str] = {}
        self.owned_workspaces: dict[str, str] = {}
        self.subscriptions: list[dict[str, Any]] = []
        self.inserts = 0
        self.updates = 0
        self.ledger: dict[str, dict[str, Any]] = {}
        self.notifications: list[Any] = []
        self.stripe_subscriptions: dict[str, dict[str, Any]] = {}
        self.stripe_customers: dict[str, dict[str, Any]] = {}
        self.fail_notifications = False

    def add_tenant(self, email: str, *, user_id: str = "user-1", workspace_id: str = "ws-1") -> None:
        self.users[email] = user_id
        self.profile_workspaces[user_id] = workspace_id

    def subscription_for(self, workspace_id: str) -> dict[str, Any] | None:
        return next((row for row in self.subscriptions if row["workspace_id"] == workspace_id), None)

    async def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        user_id = self.users.get(email)
        return {"id": user_id, "email": email} if user_id else None

    async def select_profile_workspace_id(self, user_id: str) -> str | None:
        return self.profile_workspaces.get(user_id)

    async def select_owned_workspace_id(self, user_id: str) -> str | None:
        return self.owned_workspaces.get(user_id)

    async def select_plan_id_by_slug(self, slug: str) -> str | None:
        return PLAN_IDS.get(slug)

    async def select_workspace_subscription_service(self, workspace_id: str) -> dict[str, Any] | None:
        row = self.subscription_for(workspace_id)
        return dict(row) if row else None

    async def insert_workspace_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.inserts += 1
        row = {"id": f"row-{self.inserts}", **payload}
        self.subscriptions.append(row)
        return dict(row)

    async def update_workspace_subscription(self, row_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        self.updates += 1
        for row in self.subscriptions:
            if row["id"] == row_id:
                row.update(payload)
                return dict(row)
        return None

    async def update_subscriptions_by_stripe_id(
        self,
        stripe_subscription_id: str,
        payload: dict[str, Any],
    ) -> list[dict[str, Any]]:
        matched = [row for row in self.subscriptions if row["stripe_subscription_id"] == stripe_subscription_id]
        for row in matched:
            row.update(payload)
        return [dict(row) for row in matched]

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.stripe_subscriptions[subscription_id]

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return self.stripe_customers[customer_id]

    async def enqueue_notification(self, message, *, stripe_event_id: str | None = None) -> str:
        if self.fail_notifications:
            raise RuntimeError("email function unavailable")
        self.notifications.append(message)
        return f"job-{len(self.notifications)}"

    async def post_notification(self, message) -> None:
        if self.fail_notifications:
            raise RuntimeError("email function unavailable")
        self.notifications.append(message)

    async def select_webhook_event(self, stripe_event_id: str) -> dict[str, Any] | None:
        return self.ledger.get(stripe_event_id)

    async def upsert_webhook_event(self, payload: dict[str, Any]) -> None:
        self.ledger[payload["stripe_event_id"]] = dict(payload)


@pytest.fixture
def store(monkeypatch) -> FakeBillingStore:
    fake = FakeBillingStore()
    for name in (
        "find_user_by_email",
        "select_profile_workspace_id",
        "select_owned_workspace_id",
        "select_plan_id_by_slug",
        "select_workspace_subscription_service",
        "insert_workspace_subscription",
        "update_workspace_subscription",
        "update_subscriptions_by_stripe_id",
        "retrieve_subscription",
        "retrieve_customer",
        "enqueue_notification",
        "post_notification",
    ):
        monkeypatch.setattr(reconciler, name, getattr(fake, name))
    monkeypatch.setattr(webhook, "select_webhook_event", fake.select_webhook_event)
    monkeypatch.setattr(webhook, "upsert_webhook_event", fake.upsert_webhook_event)
    return fake


def stripe_subscription(
    subscription_id: str = "sub_1",
    *,
    customer_id: str = "cus_1",
    product_id: str = PREMIUM_PRODUCT,
    status: str = "active",
    cancel_at_period_end: bool = False,
    period_start: int = 1_700_000_000,
    period_end: int = 1_702_592_000,
) -> dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {
            "data": [
                {
                    "price": {"product": product_id},
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ]
        },
    }


@pytest.fixture
def make_subscription():
    return stripe_subscription
