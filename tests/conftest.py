import asyncio
import json

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Identity, InvalidToken, get_token_verifier
from database import USERS, ensure_indexes, get_db
from main import app
from payments import (
    SESSION_COMPLETED,
    CheckoutSession,
    InvalidEvent,
    PaymentError,
    WebhookEvent,
    get_payment_gateway,
)

VALID_SIGNATURE = "t=1,v1=good"


class FakeVerifier:
    def __init__(self):
        self.tokens = {}

    def issue(self, email):
        token = f"token-{email}"
        self.tokens[token] = email
        return token

    def verify(self, token):
        if token not in self.tokens:
            raise InvalidToken("unknown token")
        return Identity(email=self.tokens[token])


class FakeGateway:
    def __init__(self):
        self.sessions = {}

    def create_session(self, item):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            payment_status="unpaid",
            email=item.email,
        )
        self.sessions[session_id] = session
        return session

    def mark_paid(self, session_id):
        self.sessions[session_id].payment_status = "paid"

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentError(f"No such checkout.session: {session_id}")
        return self.sessions[session_id]

    def parse_event(self, payload, signature):
        try:
            asyncio.get_running_loop()
            self.parsed_on_event_loop = True
        except RuntimeError:
            self.parsed_on_event_loop = False
        if signature != VALID_SIGNATURE:
            raise InvalidEvent("Invalid signature")
        event = json.loads(payload)
        session = None
        if event["type"] == SESSION_COMPLETED:
            obj = event["data"]["object"]
            session = CheckoutSession(
                id=obj["id"],
                payment_status=obj.get("payment_status"),
                email=obj.get("metadata", {}).get("email"),
            )
        return WebhookEvent(type=event["type"], session=session)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["the-life-journal-test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, verifier, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_token_verifier] = lambda: verifier
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(verifier):
    def _headers(email):
        return {"Authorization": f"Bearer {verifier.issue(email)}"}
    return _headers


@pytest.fixture
def admin_email(db):
    email = "admin@journal.test"
    db[USERS].insert_one({"email": email, "name": "Admin", "role": "admin"})
    return email
