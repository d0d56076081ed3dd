import asyncio

from fastapi import HTTPException

from whatsmetrics.billing import reconciler
from whatsmetrics.billing.actions import MarkCanceled, SendNotification, SyncCheckout, SyncSubscriptionUpdate
from whatsmetrics.billing.events import subscription_fields
from whatsmetrics.billing.reconciler import SyncOutcome

EMAIL = "owner@example.com"


def _sync(**overrides):
    params = {
        "email": EMAIL,
        "stripe_customer_id": "cus_1",
        "stripe_subscription_id": "sub_1",
        "product_id": "prod_Tf0tDmMTZeQN1O",
        "status": "active",
        "current_period_start": 1_700_000_000,
        "current_period_end": 1_702_592_000,
        "cancel_at_period_end": False,
        "event_created": 1_700_000_100,
    }
    params.update(overrides)
    return asyncio.run(reconciler.sync_subscription(**params))


def test_sync_inserts_then_updates_single_row(store) -> None:
    store.add_tenant(EMAIL)

    first = _sync()
    second = _sync(status="past_due", event_created=1_700_000_200)

    assert first.outcome is SyncOutcome.SYNCED
    assert second.outcome is SyncOutcome.SYNCED
    assert store.inserts == 1
    assert store.updates == 1
    assert len(store.subscriptions) == 1
    row = store.subscription_for("ws-1")
    assert row["plan_id"] == "plan-premium"
    assert row["status"] == "past_due"
    assert row["current_period_start"] == "2023-11-14T22:13:20Z"
    assert row["last_event_at"] == "2023-11-14T22:16:40Z"


def test_sync_unknown_product_uses_basic_plan(store) -> None:
    store.add_tenant(EMAIL)
    result = _sync(product_id="prod_unknown")
    assert result.outcome is SyncOutcome.SYNCED
    assert store.subscription_for("ws-1")["plan_id"] == "plan-basic"


def test_sync_unknown_tenant_leaves_store_unchanged(store) -> None:
    result = _sync()
    assert result.outcome is SyncOutcome.TENANT_NOT_FOUND
    assert store.subscriptions == []


def test_sync_falls_back_to_owned_workspace(store) -> None:
    store.users[EMAIL] = "user-2"
    store.owned_workspaces["user-2"] = "ws-owned"

    result = _sync()

    assert result.outcome is SyncOutcome.SYNCED
    assert result.workspace_id == "ws-owned"


def test_sync_user_without_workspace(store) -> None:
    store.users[EMAIL] = "user-3"
    assert _sync().outcome is SyncOutcome.WORKSPACE_NOT_FOUND
    assert store.subscriptions == []


def test_sync_ignores_older_event_for_same_subscription(store) -> None:
    store.add_tenant(EMAIL)
    _sync(status="canceled", event_created=1_700_000_500)

    stale = _sync(status="active", event_created=1_700_000_100)

    assert stale.outcome is SyncOutcome.STALE_EVENT
    assert store.subscription_for("ws-1")["status"] == "canceled"
    assert store.updates == 0


def test_sync_reports_store_lookup_failure(store, monkeypatch) -> None:
    store.add_tenant(EMAIL)

    async def broken_lookup(workspace_id: str):
        raise HTTPException(status_code=502, detail="Failed to query workspace subscription")

    monkeypatch.setattr(reconciler, "select_workspace_subscription_service", broken_lookup)

    result = _sync()
    assert result.outcome is SyncOutcome.STORE_UNAVAILABLE
    assert result.error == "Failed to query workspace subscription"


def test_cancel_marks_row_canceled(store) -> None:
    store.add_tenant(EMAIL)
    _sync()

    result = asyncio.run(reconciler.cancel_subscription("sub_1", event_created=1_700_000_900))

    assert result.outcome is SyncOutcome.SYNCED
    row = store.subscription_for("ws-1")
    assert row["status"] == "canceled"
    assert row["plan_id"] == "plan-premium"


def test_cancel_without_matching_row_is_noop(store) -> None:
    result = asyncio.run(reconciler.cancel_subscription("sub_missing"))
    assert result.outcome is SyncOutcome.SUBSCRIPTION_NOT_FOUND
    assert store.subscriptions == []


def test_notify_swallows_delivery_failure(store) -> None:
    store.fail_notifications = True
    sent = asyncio.run(reconciler.notify(SendNotification(to=EMAIL, type="payment_failed")))
    assert sent is False


def test_notify_inline_mode_posts_directly(store, monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_DELIVERY_MODE", "inline")
    posted: list[SendNotification] = []

    async def fake_post(message: SendNotification) -> None:
        posted.append(message)

    monkeypatch.setattr(reconciler, "post_notification", fake_post)

    sent = asyncio.run(reconciler.notify(SendNotification(to=EMAIL, type="payment_success")))

    assert sent is True
    assert [message.type for message in posted] == ["payment_success"]
    assert store.notifications == []


def test_execute_checkout_syncs_and_announces(store, make_subscription) -> None:
    store.add_tenant(EMAIL)
    store.stripe_subscriptions["sub_1"] = make_subscription()

    result = asyncio.run(
        reconciler.execute(
            SyncCheckout(
                event_created=1_700_000_100,
                subscription_id="sub_1",
                customer_id="cus_1",
                customer_email=EMAIL,
                customer_name="Ana",
            ),
            stripe_event_id="evt_1",
        )
    )

    assert result.outcome is SyncOutcome.SYNCED
    assert result.notifications == [True]
    assert store.notifications == [
        SendNotification(to=EMAIL, type="subscription_created", plan_name="Premium", customer_name="Ana")
    ]


def test_execute_checkout_notifies_even_when_tenant_missing(store, make_subscription) -> None:
    store.stripe_subscriptions["sub_1"] = make_subscription()

    result = asyncio.run(
        reconciler.execute(
            SyncCheckout(
                event_created=None,
                subscription_id="sub_1",
                customer_id="cus_1",
                customer_email=EMAIL,
                customer_name=None,
            )
        )
    )

    assert result.outcome is SyncOutcome.TENANT_NOT_FOUND
    assert result.unresolved is True
    assert len(store.notifications) == 1


def test_execute_update_announces_cancellation_once(store, make_subscription) -> None:
    store.add_tenant(EMAIL)
    store.stripe_customers["cus_1"] = {"id": "cus_1", "email": EMAIL, "name": "Ana"}
    fields = subscription_fields(make_subscription(cancel_at_period_end=True))

    first = asyncio.run(
        reconciler.execute(SyncSubscriptionUpdate(event_created=1_700_000_100, subscription=fields))
    )
    second = asyncio.run(
        reconciler.execute(SyncSubscriptionUpdate(event_created=1_700_000_200, subscription=fields))
    )

    assert first.notifications == [True]
    assert second.notifications == []
    assert len(store.notifications) == 1
    message = store.notifications[0]
    assert message.type == "subscription_canceled"
    assert message.subscription_end == "2023-12-14T22:13:20Z"
    assert store.subscription_for("ws-1")["cancel_at_period_end"] is True


def test_execute_update_skips_deleted_customer(store, make_subscription) -> None:
    store.stripe_customers["cus_1"] = {"id": "cus_1", "deleted": True}
    fields = subscription_fields(make_subscription())

    result = asyncio.run(reconciler.execute(SyncSubscriptionUpdate(event_created=None, subscription=fields)))

    assert result.outcome is None
    assert result.detail == "customer_without_email"
    assert store.subscriptions == []


def test_execute_mark_canceled(store) -> None:
    result = asyncio.run(reconciler.execute(MarkCanceled(event_created=None, subscription_id="sub_missing")))
    assert result.action == "mark_canceled"
    assert result.outcome is SyncOutcome.SUBSCRIPTION_NOT_FOUND
    assert result.unresolved is False


def test_retry_mode_defers_cancellation_email_for_unknown_tenant(store, make_subscription, monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_RETRY_UNRESOLVED", "true")
    store.stripe_customers["cus_1"] = {"id": "cus_1", "email": EMAIL}
    fields = subscription_fields(make_subscription(cancel_at_period_end=True))

    result = asyncio.run(reconciler.execute(SyncSubscriptionUpdate(event_created=None, subscription=fields)))

    assert result.outcome is SyncOutcome.TENANT_NOT_FOUND
    assert result.notifications == []
    assert store.notifications == []


def test_checkout_email_names_unknown_product_premium(store, make_subscription) -> None:
    store.add_tenant(EMAIL)
    store.stripe_subscriptions["sub_1"] = make_subscription(product_id="prod_unknown")

    asyncio.run(
        reconciler.execute(
            SyncCheckout(
                event_created=None,
                subscription_id="sub_1",
                customer_id="cus_1",
                customer_email=EMAIL,
                customer_name=None,
            )
        )
    )

    assert store.subscription_for("ws-1")["plan_id"] == "plan-basic"
    assert store.notifications[0].plan_name == "Premium"
