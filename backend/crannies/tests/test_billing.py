"""Tests for Stripe checkout and webhook handling.

WHAT: POST /billing/checkout and POST /webhooks/stripe
WHY: A completed checkout is the only path from "trial" to "active"; a broken
     webhook leaves paying customers locked out

REFERENCES:
  - crannies/services/stripe_billing.py
  - crannies/routers/billing.py

Stripe is never called: the SDK entry points are patched with unittest.mock.
"""

import asyncio
import json
from unittest.mock import patch

import pytest
import stripe

from crannies.deps import Settings
from crannies.models import StripeWebhookEvent, Workspace, WorkspaceSubscription

PERIOD_START = 1717200000  # 2024-06-01T00:00:00Z
PERIOD_END = 1719792000    # 2024-07-01T00:00:00Z


def _subscription(sub_id="sub_123", status="active"):
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "trial_end": None,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
    }


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _checkout_completed(workspace, event_id="evt_checkout", subscription="sub_123"):
    return _event(
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "customer": "cus_123",
            "subscription": subscription,
            "metadata": {
                "userId": "user-1",
                "workspaceId": str(workspace.id),
                "userEmail": "owner@example.com",
            },
        },
        event_id=event_id,
    )


def _post_event(client, event, headers=None):
    return client.post(
        "/webhooks/stripe",
        content=json.dumps(event),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


# ============================================================================
# Checkout
# ============================================================================


class TestCheckout:

    @patch("crannies.services.stripe_billing.stripe.checkout.Session.create")
    def test_admin_creates_checkout(self, mock_create, client, auth_headers, test_workspace):
        mock_create.return_value = {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}

        response = client.post("/billing/checkout", json={}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "url": "https://checkout.stripe.com/c/pay/cs_test_1",
            "session_id": "cs_test_1",
        }
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_test_123"}]
        assert kwargs["metadata"]["workspaceId"] == str(test_workspace.id)
        assert kwargs["metadata"]["userEmail"] == "owner@example.com"
        assert kwargs["success_url"].endswith("/?success=true")
        assert kwargs["cancel_url"].endswith("/trial-expired")
        assert kwargs["allow_promotion_codes"] is True

    def test_checkout_runs_off_the_event_loop(self, client, auth_headers, test_workspace):
        loops = []

        def _create(**kwargs):
            try:
                loops.append(asyncio.get_running_loop())
            except RuntimeError:
                loops.append(None)
            return {"id": "cs_test_3", "url": "https://checkout.stripe.com/c/pay/cs_test_3"}

        with patch("crannies.services.stripe_billing.stripe.checkout.Session.create", side_effect=_create):
            response = client.post("/billing/checkout", json={}, headers=auth_headers)

        assert response.status_code == 200
        assert loops == [None]

    @patch("crannies.services.stripe_billing.stripe.checkout.Session.create")
    def test_custom_redirect_urls(self, mock_create, client, auth_headers, test_workspace):
        mock_create.return_value = {"id": "cs_test_2", "url": "https://checkout.stripe.com/c/pay/cs_test_2"}

        client.post(
            "/billing/checkout",
            json={"success_url": "https://app.example.com/ok", "cancel_url": "https://app.example.com/no"},
            headers=auth_headers,
        )

        kwargs = mock_create.call_args.kwargs
        assert kwargs["success_url"] == "https://app.example.com/ok"
        assert kwargs["cancel_url"] == "https://app.example.com/no"

    def test_expired_workspace_can_still_checkout(self, client, auth_headers, test_workspace, expire_trial):
        expire_trial(test_workspace)

        with patch("crannies.services.stripe_billing.stripe.checkout.Session.create") as mock_create:
            mock_create.return_value = {"id": "cs_test_3", "url": "https://checkout.stripe.com/c/pay/cs_test_3"}
            response = client.post("/billing/checkout", json={}, headers=auth_headers)

        assert response.status_code == 200

    def test_non_admin_forbidden(self, client, member_headers):
        response = client.post("/billing/checkout", json={}, headers=member_headers)

        assert response.status_code == 403

    @patch("crannies.services.stripe_billing.stripe.checkout.Session.create")
    def test_stripe_error_maps_to_502(self, mock_create, client, auth_headers, test_workspace):
        mock_create.side_effect = stripe.StripeError("card network down")

        response = client.post("/billing/checkout", json={}, headers=auth_headers)

        assert response.status_code == 502

    def test_missing_price_maps_to_500(self, client, auth_headers, test_workspace):
        settings = Settings(STRIPE_SECRET_KEY="sk_test_123", STRIPE_PRICE_ID=None)

        with patch("crannies.services.stripe_billing.get_settings", return_value=settings):
            response = client.post("/billing/checkout", json={}, headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["detail"] == "Billing is not configured"


# ============================================================================
# Webhooks
# ============================================================================


class TestStripeWebhook:

    @patch("crannies.services.stripe_billing.stripe.Subscription.retrieve")
    def test_checkout_completed_activates_workspace(
        self, mock_retrieve, client, test_db_session, test_workspace, expire_trial
    ):
        expire_trial(test_workspace)
        mock_retrieve.return_value = _subscription()

        response = _post_event(client, _checkout_completed(test_workspace))

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "event_type": "checkout.session.completed",
            "action": "processed",
        }
        mock_retrieve.assert_called_once_with("sub_123")

        workspace = test_db_session.query(Workspace).filter(Workspace.id == test_workspace.id).one()
        assert workspace.subscription_status == "active"
        assert workspace.stripe_customer_id == "cus_123"

        record = test_db_session.query(WorkspaceSubscription).one()
        assert record.workspace_id == test_workspace.id
        assert record.stripe_customer_id == "cus_123"
        assert record.status == "active"
        assert record.current_period_start is not None
        assert record.current_period_end is not None

    @patch("crannies.services.stripe_billing.stripe.Subscription.retrieve")
    def test_checkout_completed_opens_trial_gate(
        self, mock_retrieve, client, auth_headers, test_workspace, expire_trial
    ):
        expire_trial(test_workspace)
        mock_retrieve.return_value = _subscription()
        assert client.get("/issues", headers=auth_headers).status_code == 402

        _post_event(client, _checkout_completed(test_workspace))

        assert client.get("/issues", headers=auth_headers).status_code == 200

    @patch("crannies.services.stripe_billing.stripe.Subscription.retrieve")
    def test_duplicate_event_is_skipped(self, mock_retrieve, client, test_db_session, test_workspace):
        mock_retrieve.return_value = _subscription()
        event = _checkout_completed(test_workspace)

        first = _post_event(client, event)
        second = _post_event(client, event)

        assert first.json()["action"] == "processed"
        assert second.json()["action"] == "skipped"
        assert mock_retrieve.call_count == 1
        assert test_db_session.query(StripeWebhookEvent).count() == 1

    def test_checkout_without_metadata(self, client):
        event = _event("checkout.session.completed", {"id": "cs_x", "metadata": {}})

        response = _post_event(client, event)

        assert response.json()["action"] == "no_metadata"

    def test_checkout_for_unknown_workspace(self, client):
        event = _event(
            "checkout.session.completed",
            {"id": "cs_x", "metadata": {"userId": "u", "workspaceId": "not-a-uuid"}},
        )

        response = _post_event(client, event)

        assert response.json()["action"] == "workspace_not_found"

    @patch("crannies.services.stripe_billing.stripe.Subscription.retrieve")
    def test_invoice_payment_refreshes_subscription(
        self, mock_retrieve, client, test_db_session, test_workspace
    ):
        mock_retrieve.return_value = _subscription()
        _post_event(client, _checkout_completed(test_workspace))

        mock_retrieve.return_value = _subscription(status="past_due")
        response = _post_event(
            client,
            _event("invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_123"}, event_id="evt_invoice"),
        )

        assert response.json()["action"] == "processed"
        record = test_db_session.query(WorkspaceSubscription).one()
        assert record.status == "past_due"

    def test_invoice_for_unknown_subscription(self, client):
        response = _post_event(
            client,
            _event("invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_missing"}),
        )

        assert response.json()["action"] == "subscription_not_found"

    @patch("crannies.services.stripe_billing.stripe.Subscription.retrieve")
    def test_subscription_deleted_marks_row_canceled(
        self, mock_retrieve, client, test_db_session, test_workspace
    ):
        mock_retrieve.return_value = _subscription()
        _post_event(client, _checkout_completed(test_workspace))

        response = _post_event(
            client,
            _event("customer.subscription.deleted", {"id": "sub_123"}, event_id="evt_deleted"),
        )

        assert response.json()["action"] == "processed"
        record = test_db_session.query(WorkspaceSubscription).one()
        assert record.status == "canceled"
        workspace = test_db_session.query(Workspace).filter(Workspace.id == test_workspace.id).one()
        assert workspace.subscription_status == "active"

    def test_unhandled_event_is_ignored(self, client):
        response = _post_event(client, _event("customer.created", {"id": "cus_1"}))

        assert response.status_code == 200
        assert response.json()["action"] == "ignored"

    @patch("crannies.services.stripe_billing.stripe.Subscription.retrieve")
    def test_processing_error_returns_500_and_is_not_recorded(
        self, mock_retrieve, client, test_db_session, test_workspace
    ):
        mock_retrieve.side_effect = stripe.StripeError("boom")

        response = _post_event(client, _checkout_completed(test_workspace, event_id="evt_broken"))

        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"
        assert test_db_session.query(StripeWebhookEvent).filter(StripeWebhookEvent.event_id == "evt_broken").count() == 0
        workspace = test_db_session.query(Workspace).filter(Workspace.id == test_workspace.id).one()
        assert workspace.subscription_status == "trial"

    @patch("crannies.services.stripe_billing.stripe.Subscription.retrieve")
    def test_redelivery_after_transient_error_activates_workspace(
        self, mock_retrieve, client, test_db_session, test_workspace
    ):
        mock_retrieve.side_effect = [stripe.APIConnectionError("connection reset"), _subscription()]
        event = _checkout_completed(test_workspace, event_id="evt_flaky")

        first = _post_event(client, event)
        second = _post_event(client, event)

        assert first.status_code == 500
        assert second.status_code == 200
        assert second.json()["action"] == "processed"
        ledger = test_db_session.query(StripeWebhookEvent).filter(StripeWebhookEvent.event_id == "evt_flaky").one()
        assert ledger.processing_result == "success"
        workspace = test_db_session.query(Workspace).filter(Workspace.id == test_workspace.id).one()
        assert workspace.subscription_status == "active"

    def test_processing_runs_off_the_event_loop(self, client):
        loops = []

        def _record_loop(event_type, data, db):
            try:
                loops.append(asyncio.get_running_loop())
            except RuntimeError:
                loops.append(None)
            return "ignored"

        with patch("crannies.routers.billing.stripe_billing.process_webhook_event", side_effect=_record_loop):
            response = _post_event(client, _event("customer.created", {"id": "cus_1"}, event_id="evt_thread"))

        assert response.status_code == 200
        assert loops == [None]

    @pytest.mark.parametrize(
        "body",
        [b"[]", b'"checkout.session.completed"', b"42", b"null", b'{"id": "evt_x", "type": "customer.created", "data": []}'],
    )
    def test_non_object_payload_returns_400(self, client, body):
        response = client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook payload"

    def test_invalid_json_returns_400(self, client):
        response = client.post(
            "/webhooks/stripe",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_bad_signature_returns_400(self, client):
        settings = Settings(STRIPE_WEBHOOK_SECRET="whsec_test")

        with patch("crannies.services.stripe_billing.get_settings", return_value=settings):
            response = _post_event(
                client,
                _event("customer.created", {"id": "cus_1"}),
                headers={"Stripe-Signature": "t=1,v1=deadbeef"},
            )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"

    def test_valid_signature_is_accepted(self, client):
        secret = "whsec_test"
        payload = json.dumps(_event("customer.created", {"id": "cus_1"}, event_id="evt_signed"))
        settings = Settings(STRIPE_WEBHOOK_SECRET=secret)

        with patch("crannies.services.stripe_billing.get_settings", return_value=settings), patch(
            "crannies.services.stripe_billing.stripe.Webhook.construct_event"
        ) as mock_construct:
            response = client.post(
                "/webhooks/stripe",
                content=payload,
                headers={"Content-Type": "application/json", "Stripe-Signature": "t=1,v1=abc"},
            )

        assert response.status_code == 200
        assert response.json()["action"] == "ignored"
        mock_construct.assert_called_once_with(payload.encode(), "t=1,v1=abc", secret)


@pytest.mark.parametrize(
    "subscription, expected_start",
    [
        (_subscription(), PERIOD_START),
        (
            {
                "id": "sub_new_api",
                "status": "active",
                "items": {"data": [{"current_period_start": PERIOD_START, "current_period_end": PERIOD_END}]},
            },
            PERIOD_START,
        ),
    ],
)
def test_period_bounds_reads_items_fallback(subscription, expected_start):
    from crannies.services.stripe_billing import _period_bounds

    start, end = _period_bounds(subscription)

    assert int(start.timestamp()) == expected_start
    assert int(end.timestamp()) == PERIOD_END
