"""Tests for the Razorpay webhook endpoint: signature, dedupe and dispatch."""

import json
from datetime import timedelta

from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.states import PaymentStatus, PaymentType, SubscriptionStatus
from app.database import utcnow
from app.models.payment import Payment
from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.workers.period_sweep import sweep_batch

WEBHOOK_URL = "/api/v1/webhooks/razorpay"


def _body(event_type: str, **entities: dict) -> bytes:
    event = {
        "entity": "event",
        "event": event_type,
        "payload": {name: {"entity": entity} for name, entity in entities.items()},
    }
    return json.dumps(event).encode()


async def _deliver(client: AsyncClient, signer, body: bytes, event_id: str | None = None):
    headers = {"x-razorpay-signature": signer(body), "content-type": "application/json"}
    if event_id:
        headers["x-razorpay-event-id"] = event_id
    return await client.post(WEBHOOK_URL, content=body, headers=headers)


class TestWebhookVerification:
    async def test_bad_signature(self, client: AsyncClient):
        response = await client.post(
            WEBHOOK_URL,
            content=_body("payment.captured"),
            headers={"x-razorpay-signature": "forged"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    async def test_missing_signature(self, client: AsyncClient):
        response = await client.post(WEBHOOK_URL, content=_body("payment.captured"))
        assert response.status_code == 400

    async def test_signed_garbage(self, client: AsyncClient, webhook_signer):
        response = await _deliver(client, webhook_signer, b"not json")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid payload"


class TestWebhookDispatch:
    async def test_unknown_event_ignored(self, client: AsyncClient, webhook_signer):
        response = await _deliver(client, webhook_signer, _body("invoice.paid", invoice={"id": "inv_1"}))
        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    async def test_captured_processed(
        self, client: AsyncClient, db_session: AsyncSession, test_user, plans, webhook_signer
    ):
        plan = plans["premium-monthly"]
        payment = Payment(
            user_id=test_user.id,
            type=PaymentType.SUBSCRIPTION.value,
            amount=plan.price,
            currency=plan.currency,
            status=PaymentStatus.PENDING.value,
            gateway_order_id="order_hook_001",
            plan_id=plan.id,
            ref_type="subscription",
        )
        db_session.add(payment)
        await db_session.flush()

        body = _body(
            "payment.captured",
            payment={"id": "pay_hook_001", "order_id": "order_hook_001", "amount": 19900, "method": "upi"},
        )
        response = await _deliver(client, webhook_signer, body, event_id="evt_hook_001")

        assert response.status_code == 200
        assert response.json() == {"status": "processed"}
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.ref_id is not None
        assert await db_session.get(WebhookEvent, "evt_hook_001") is not None

    async def test_duplicate_event_id(self, client: AsyncClient, webhook_signer):
        body = _body("invoice.paid", invoice={"id": "inv_1"})

        first = await _deliver(client, webhook_signer, body, event_id="evt_dup_001")
        second = await _deliver(client, webhook_signer, body, event_id="evt_dup_001")

        assert first.json() == {"status": "ignored"}
        assert second.json() == {"status": "duplicate"}

    async def test_duplicate_charge_delivery_applied_once(
        self, client: AsyncClient, db_session: AsyncSession, test_user, plans, make_subscription, webhook_signer
    ):
        sub = await make_subscription(test_user, plans["premium-monthly"], gateway_subscription_id="sub_hook_001")
        body = _body(
            "subscription.charged",
            subscription={"id": "sub_hook_001"},
            payment={"id": "pay_hook_renew", "amount": 19900, "currency": "INR"},
        )

        first = await _deliver(client, webhook_signer, body, event_id="evt_charge_001")
        end_after_first = sub.current_period_end
        second = await _deliver(client, webhook_signer, body, event_id="evt_charge_001")

        assert first.json() == {"status": "processed"}
        assert second.json() == {"status": "duplicate"}
        assert sub.current_period_end == end_after_first
        result = await db_session.execute(select(Payment).where(Payment.gateway_payment_id == "pay_hook_renew"))
        assert len(result.scalars().all()) == 1

    async def test_charge_for_cancelled_subscription_conflicts(
        self, client: AsyncClient, test_user, plans, make_subscription, webhook_signer
    ):
        sub = await make_subscription(
            test_user, plans["premium-monthly"], status="cancelled", gateway_subscription_id="sub_hook_002"
        )
        body = _body(
            "subscription.charged",
            subscription={"id": "sub_hook_002"},
            payment={"id": "pay_hook_late", "amount": 19900},
        )

        response = await _deliver(client, webhook_signer, body)

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "InvalidStateTransition"
        assert sub.status == SubscriptionStatus.CANCELLED


class TestRecurringSubscriptionLink:
    async def test_captured_payment_links_gateway_subscription(
        self, client: AsyncClient, db_session: AsyncSession, test_user, plans, webhook_signer
    ):
        plan = plans["premium-monthly"]
        payment = Payment(
            user_id=test_user.id,
            type=PaymentType.SUBSCRIPTION.value,
            amount=plan.price,
            currency=plan.currency,
            status=PaymentStatus.PENDING.value,
            gateway_order_id="order_hook_002",
            plan_id=plan.id,
            ref_type="subscription",
        )
        db_session.add(payment)
        await db_session.flush()

        body = _body(
            "payment.captured",
            payment={
                "id": "pay_hook_002",
                "order_id": "order_hook_002",
                "amount": 19900,
                "notes": {"razorpay_subscription_id": "sub_hook_010"},
            },
        )
        response = await _deliver(client, webhook_signer, body)

        assert response.json() == {"status": "processed"}
        sub = await db_session.get(Subscription, payment.ref_id)
        assert sub.gateway_subscription_id == "sub_hook_010"

    async def test_activation_links_live_subscription(
        self, client: AsyncClient, test_user, plans, make_subscription, webhook_signer
    ):
        sub = await make_subscription(test_user, plans["premium-monthly"])
        body = _body(
            "subscription.activated",
            subscription={"id": "sub_hook_011", "notes": {"user_id": str(test_user.id)}},
        )

        response = await _deliver(client, webhook_signer, body)

        assert response.json() == {"status": "processed"}
        assert sub.gateway_subscription_id == "sub_hook_011"

    async def test_activation_without_user_ignored(
        self, client: AsyncClient, test_user, plans, make_subscription, webhook_signer
    ):
        sub = await make_subscription(test_user, plans["premium-monthly"])
        body = _body("subscription.activated", subscription={"id": "sub_hook_012", "notes": {"user_id": "nobody"}})

        response = await _deliver(client, webhook_signer, body)

        assert response.json() == {"status": "processed"}
        assert sub.gateway_subscription_id is None


class TestRenewalOrdering:
    """The period end and the renewal charge can arrive in either order."""

    @staticmethod
    def _charge(gateway_subscription_id: str, payment_id: str) -> bytes:
        return _body(
            "subscription.charged",
            subscription={"id": gateway_subscription_id},
            payment={"id": payment_id, "amount": 19900, "currency": "INR"},
        )

    async def test_charge_before_period_end(
        self, client: AsyncClient, db_session: AsyncSession, test_user, plans, make_subscription, webhook_signer
    ):
        sub = await make_subscription(test_user, plans["premium-monthly"], gateway_subscription_id="sub_order_001")
        paid_until = sub.current_period_end

        response = await _deliver(client, webhook_signer, self._charge("sub_order_001", "pay_order_001"))
        batch = await sweep_batch(db_session, now=utcnow(), limit=10)

        assert response.json() == {"status": "processed"}
        assert batch.handled == 0
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_start == paid_until

    async def test_sweep_within_grace_then_charge(
        self, client: AsyncClient, db_session: AsyncSession, test_user, plans, make_subscription, webhook_signer
    ):
        end = utcnow() - timedelta(hours=2)
        sub = await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=end - timedelta(days=30),
            period_end=end,
            gateway_subscription_id="sub_order_002",
        )

        batch = await sweep_batch(db_session, now=utcnow(), limit=10)
        assert batch.handled == 0
        assert sub.status == SubscriptionStatus.ACTIVE

        response = await _deliver(client, webhook_signer, self._charge("sub_order_002", "pay_order_002"))

        assert response.json() == {"status": "processed"}
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_start == end
        assert sub.current_period_end > utcnow()

    async def test_charge_after_grace_revives_expired(
        self, client: AsyncClient, db_session: AsyncSession, test_user, plans, make_subscription, webhook_signer
    ):
        end = utcnow() - timedelta(days=3)
        sub = await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=end - timedelta(days=30),
            period_end=end,
            gateway_subscription_id="sub_order_003",
        )

        await sweep_batch(db_session, now=utcnow(), limit=10)
        assert sub.status == SubscriptionStatus.EXPIRED

        response = await _deliver(client, webhook_signer, self._charge("sub_order_003", "pay_order_003"))

        assert response.status_code == 200
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_end > utcnow()
        result = await db_session.execute(select(Payment).where(Payment.gateway_payment_id == "pay_order_003"))
        assert result.scalar_one().ref_id == sub.id
