"""Shared test infrastructure for the GREIA Platform test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- file_session_factory: file-backed sessions for concurrent transactions
- fake_gateway / fake_bus / fake_classifier: in-process collaborators
- make_user, make_submission, make_offer, make_commission, make_review: row factories
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from greia_platform.infra.database import Base

import greia_platform.domain.models  # noqa: F401

from greia_platform.domain.enums import (
    CommissionStatus,
    OfferStatus,
    ReviewStatus,
    SubmissionStatus,
    UserRole,
    VerificationStatus,
)
from greia_platform.domain.errors import PaymentGatewayError
from greia_platform.domain.models import Commission, Offer, Review, Submission, User
from greia_platform.domain.schemas import ClassifierScores, PaymentIntentResult


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def file_session_factory(tmp_path):
    """Session factory on a file-backed SQLite database.

    Unlike the in-memory fixture, every session gets its own connection,
    so tests can run genuinely concurrent transactions.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'greia_test.db'}",
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeGateway:
    """PaymentGateway that records calls instead of talking to Stripe."""

    def __init__(self):
        self.calls = []
        self.error = None
        self.delay = 0.0
        self.intent_statuses = {}
        self._counter = 0

    async def create_payment_intent(self, amount, currency, destination, metadata, idempotency_key):
        self.calls.append({
            "amount": amount,
            "currency": currency,
            "destination": destination,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self._counter += 1
        return PaymentIntentResult(intent_id=f"pi_test_{self._counter}", status="processing")

    async def retrieve_intent(self, intent_id):
        if intent_id not in self.intent_statuses:
            raise PaymentGatewayError(f"No such payment_intent: {intent_id}")
        return self.intent_statuses[intent_id]

    def parse_webhook(self, payload, signature):
        raise NotImplementedError


class FakeBus:
    """RealtimeBus capturing (channel, event, payload) tuples."""

    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish(self, channel, event, payload):
        if self.fail:
            raise ConnectionError("realtime bus unavailable")
        self.published.append((channel, event, payload))

    def events(self, event=None, channel=None):
        return [
            p for p in self.published
            if (event is None or p[1] == event) and (channel is None or p[0] == channel)
        ]


class FakeClassifier:
    """ContentClassifier returning fixed scores.

    Content containing a string in ``fail_on`` raises; content containing a
    string in ``toxic_on`` scores as toxic.
    """

    def __init__(self, fail_on=(), toxic_on=()):
        self.fail_on = tuple(fail_on)
        self.toxic_on = tuple(toxic_on)
        self.calls = []

    async def classify(self, title, content, model=None):
        self.calls.append((title, content, model))
        if any(marker in content for marker in self.fail_on):
            raise RuntimeError("classifier backend returned 503")
        toxic = any(marker in content for marker in self.toxic_on)
        return ClassifierScores(
            toxicity=0.95 if toxic else 0.05,
            spam_probability=0.02,
            fake_probability=0.03,
            content_flags={"hate_speech": False, "profanity": toxic},
            sentiment=-0.8 if toxic else 0.6,
            keywords=["service"],
            language="en",
        )


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_bus():
    return FakeBus()


@pytest.fixture
def fake_classifier():
    return FakeClassifier()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

async def make_user(
    db,
    role=UserRole.OWNER,
    verified=True,
    service_areas=None,
    stripe_account_id=None,
    is_active=True,
    name=None,
) -> User:
    user_id = str(uuid.uuid4())
    user = User(
        id=user_id,
        email=f"{user_id[:8]}@example.com",
        name=name or f"{role.value.title()} {user_id[:4]}",
        role=role.value,
        verification_status=(
            VerificationStatus.VERIFIED.value if verified else VerificationStatus.PENDING.value
        ),
        is_active=is_active,
        service_areas=service_areas or [],
        stripe_account_id=stripe_account_id,
    )
    db.add(user)
    await db.commit()
    return user


async def make_agent(db, **kwargs) -> User:
    kwargs.setdefault("stripe_account_id", f"acct_{uuid.uuid4().hex[:12]}")
    return await make_user(db, role=UserRole.AGENT, **kwargs)


async def make_submission(db, owner, price="300000", status=SubmissionStatus.PENDING, postcode="SW1A 1AA"):
    submission = Submission(
        id=str(uuid.uuid4()),
        owner_id=owner.id,
        title="3 bed terrace, Pimlico",
        price=Decimal(price),
        postcode=postcode,
        status=status.value,
    )
    db.add(submission)
    await db.commit()
    return submission


async def make_offer(db, submission, agent, status=OfferStatus.ACCEPTED) -> Offer:
    offer = Offer(
        id=str(uuid.uuid4()),
        submission_id=submission.id,
        agent_id=agent.id,
        status=status.value,
        created_at=datetime.now(timezone.utc),
    )
    db.add(offer)
    await db.commit()
    return offer


async def make_commission(
    db,
    agent,
    submission=None,
    status=CommissionStatus.PENDING,
    amount="15000.00",
    platform_fee="750.00",
    stripe_payment_id=None,
    created_at=None,
) -> Commission:
    if submission is None:
        owner = await make_user(db)
        submission = await make_submission(db, owner, status=SubmissionStatus.ASSIGNED)
    offer = await make_offer(db, submission, agent)
    now = created_at or datetime.now(timezone.utc)
    commission = Commission(
        id=str(uuid.uuid4()),
        listing_id=submission.id,
        agent_id=agent.id,
        inquiry_id=offer.id,
        listing_price=submission.price,
        rate=0.05,
        amount=Decimal(amount),
        platform_fee=Decimal(platform_fee),
        currency="gbp",
        due_date=now + timedelta(days=30),
        status=status.value,
        stripe_payment_id=stripe_payment_id,
        payment_attempts=1 if stripe_payment_id else 0,
        created_at=now,
    )
    db.add(commission)
    await db.commit()
    return commission


async def make_review(db, author, content="Great agent, very responsive.", status=ReviewStatus.PENDING,
                      title="Smooth sale") -> Review:
    review = Review(
        id=str(uuid.uuid4()),
        user_id=author.id,
        item_id=str(uuid.uuid4()),
        item_type="agent",
        rating=5,
        title=title,
        content=content,
        status=status.value,
        created_at=datetime.now(timezone.utc),
    )
    db.add(review)
    await db.commit()
    return review
