"""HTTP-level tests: routing, auth, error rendering and the main flows."""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt

from greia_platform.agents.review_analysis_agent import get_content_classifier
from greia_platform.app.config import get_settings
from greia_platform.app.main import app
from greia_platform.domain.enums import GatewayOutcome, UserRole
from greia_platform.domain.schemas import GatewayEvent
from greia_platform.infra.database import get_db
from greia_platform.infra.realtime import get_realtime_bus
from greia_platform.infra.stripe_gateway import get_payment_gateway

from conftest import FakeBus, FakeClassifier, FakeGateway, make_agent, make_review, make_user


class WebhookGateway(FakeGateway):
    """FakeGateway whose webhook parser returns a queued event."""

    def __init__(self):
        super().__init__()
        self.next_event = None

    def parse_webhook(self, payload, signature):
        return self.next_event


def _auth(user) -> dict:
    settings = get_settings()
    token = jwt.encode({"sub": user.id}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(db_session):
    gateway = WebhookGateway()
    bus = FakeBus()
    classifier = FakeClassifier(toxic_on=["idiot"])

    async def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_realtime_bus] = lambda: bus
    app.dependency_overrides[get_content_classifier] = lambda: classifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        ac.gateway = gateway
        ac.bus = bus
        yield ac

    app.dependency_overrides.clear()


class TestHealthAndAuth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "greia-platform"}

    async def test_missing_token(self, client):
        resp = await client.post("/api/submissions", json={})
        assert resp.status_code == 401

    async def test_me(self, client, db_session):
        user = await make_user(db_session)
        resp = await client.get("/api/auth/me", headers=_auth(user))
        assert resp.status_code == 200
        assert resp.json()["id"] == user.id


class TestOfferToPayoutFlow:
    async def test_full_flow(self, client, db_session):
        owner = await make_user(db_session)
        agent = await make_agent(db_session, service_areas=["SW1A"])
        rival = await make_agent(db_session)
        admin = await make_user(db_session, role=UserRole.ADMIN)

        resp = await client.post(
            "/api/submissions",
            json={"title": "Mews house", "price": "300000", "postcode": "SW1A 1AA"},
            headers=_auth(owner),
        )
        assert resp.status_code == 201
        submission_id = resp.json()["id"]
        assert client.bus.events("new-private-listing", channel=f"private-user-{agent.id}")

        resp = await client.post(
            f"/api/submissions/{submission_id}/offers",
            json={"kind": "valuation", "proposed_value": "310000", "confidence": 4},
            headers=_auth(agent),
        )
        assert resp.status_code == 201
        offer_id = resp.json()["id"]

        resp = await client.post(
            f"/api/submissions/{submission_id}/offers", json={"kind": "interest"}, headers=_auth(agent),
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "duplicate_offer"

        resp = await client.post(
            f"/api/submissions/{submission_id}/offers", json={"kind": "interest"}, headers=_auth(rival),
        )
        rival_offer_id = resp.json()["id"]

        resp = await client.post(
            f"/api/submissions/{submission_id}/offers/{offer_id}/decision",
            json={"decision": "accept"},
            headers=_auth(agent),
        )
        assert resp.status_code == 403

        resp = await client.post(
            f"/api/submissions/{submission_id}/offers/{offer_id}/decision",
            json={"decision": "accept", "reason": "Strong valuation"},
            headers=_auth(owner),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["offer"]["status"] == "accepted"
        assert body["submission"]["status"] == "assigned"
        assert body["rejected_offer_ids"] == [rival_offer_id]
        assert Decimal(str(body["commission"]["amount"])) == Decimal("15000")
        commission_id = body["commission"]["id"]

        resp = await client.post(f"/api/commissions/{commission_id}/pay", headers=_auth(agent))
        assert resp.status_code == 403

        resp = await client.post(f"/api/commissions/{commission_id}/pay", headers=_auth(admin))
        assert resp.status_code == 200
        assert resp.json()["status"] == "processing"
        intent_id = resp.json()["stripe_payment_id"]

        client.gateway.next_event = GatewayEvent(
            event_id="evt_api",
            event_type="payment_intent.succeeded",
            intent_id=intent_id,
            outcome=GatewayOutcome.SUCCEEDED,
            metadata={"commission_id": commission_id},
            transaction_ref="ch_api",
        )
        resp = await client.post(
            "/api/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
        )
        assert resp.json() == {
            "received": True, "handled": True, "commission_id": commission_id, "status": "paid",
        }

        resp = await client.get("/api/commissions/summary", headers=_auth(agent))
        assert Decimal(str(resp.json()["total_earned"])) == Decimal("15000")

        resp = await client.get("/api/notifications/unread-count", headers=_auth(agent))
        assert resp.json()["unread"] >= 3

    async def test_unknown_submission_is_404(self, client, db_session):
        owner = await make_user(db_session)
        resp = await client.get("/api/submissions/nope", headers=_auth(owner))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_unhandled_webhook_is_acknowledged(self, client):
        resp = await client.post("/api/webhooks/stripe", content=b"{}")
        assert resp.json() == {"received": True, "handled": False}


class TestModerationApi:
    async def test_bulk_requires_moderator(self, client, db_session):
        author = await make_user(db_session)
        review = await make_review(db_session, author)
        resp = await client.post(
            "/api/moderation/reviews/bulk",
            json={"decisions": [{"review_id": review.id, "action": "approve"}]},
            headers=_auth(author),
        )
        assert resp.status_code == 403

    async def test_bulk_summary(self, client, db_session):
        author = await make_user(db_session)
        moderator = await make_user(db_session, role=UserRole.MODERATOR)
        clean = await make_review(db_session, author)
        toxic = await make_review(db_session, author, content="What an idiot")

        resp = await client.post(
            "/api/moderation/reviews/bulk",
            json={"decisions": [
                {"review_id": clean.id, "action": "approve"},
                {"review_id": toxic.id, "action": "approve"},
                {"review_id": "missing", "action": "reject"},
            ]},
            headers=_auth(moderator),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert (body["total"], body["succeeded"], body["skipped"], body["failed"]) == (3, 1, 1, 1)
        assert body["results"]["skipped"][0]["reason"] == "Failed AI check"

    async def test_single_approval_failing_ai_check(self, client, db_session):
        author = await make_user(db_session)
        moderator = await make_user(db_session, role=UserRole.MODERATOR)
        toxic = await make_review(db_session, author, content="What an idiot")

        resp = await client.post(
            f"/api/moderation/reviews/{toxic.id}",
            json={"action": "approve"},
            headers=_auth(moderator),
        )

        assert resp.status_code == 422
        assert resp.json()["error"] == "ai_check_failed"
        assert resp.json()["ai_analysis"]["toxicity"] > 0.7

    async def test_rule_with_missing_fields_is_rejected(self, client, db_session):
        moderator = await make_user(db_session, role=UserRole.MODERATOR)
        resp = await client.post(
            "/api/moderation/rules",
            json={"name": "AI", "type": "ai", "config": {"threshold": 0.5}},
            headers=_auth(moderator),
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "policy_violation"

    async def test_flag_then_duplicate(self, client, db_session):
        author = await make_user(db_session)
        reporter = await make_user(db_session)
        review = await make_review(db_session, author)

        first = await client.post(
            f"/api/moderation/reviews/{review.id}/flag", json={"reason": "spam"}, headers=_auth(reporter),
        )
        second = await client.post(
            f"/api/moderation/reviews/{review.id}/flag", json={"reason": "spam"}, headers=_auth(reporter),
        )

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["error"] == "already_exists"
