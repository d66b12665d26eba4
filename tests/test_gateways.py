import mongomock
import pytest
import stripe
from bson import ObjectId
from fastapi.testclient import TestClient
from firebase_admin import exceptions

import auth
import config
import main
from auth import FirebaseVerifier, InvalidToken, get_token_verifier
from main import app
from payments import SESSION_COMPLETED, InvalidEvent, PaymentError, StripeGateway
from schemas import CartItem


def test_firebase_verifier_returns_identity(monkeypatch):
    monkeypatch.setattr(auth.firebase_auth, "verify_id_token",
                        lambda token, app=None: {"email": "me@journal.test", "uid": "u1"})
    identity = FirebaseVerifier(app=None).verify("id-token")
    assert identity.email == "me@journal.test"
    assert identity.uid == "u1"


def test_firebase_verifier_rejects_token_without_email(monkeypatch):
    monkeypatch.setattr(auth.firebase_auth, "verify_id_token", lambda token, app=None: {"uid": "u1"})
    with pytest.raises(InvalidToken):
        FirebaseVerifier(app=None).verify("id-token")


def test_firebase_verifier_wraps_firebase_errors(monkeypatch):
    def reject(token, app=None):
        raise exceptions.InvalidArgumentError("bad token")
    monkeypatch.setattr(auth.firebase_auth, "verify_id_token", reject)
    with pytest.raises(InvalidToken):
        FirebaseVerifier(app=None).verify("id-token")


def test_protected_route_without_verifier(client):
    app.dependency_overrides.pop(get_token_verifier)
    res = client.delete(f"/lessons/{ObjectId()}", headers={"Authorization": "Bearer x"})
    assert res.status_code == 500


def test_missing_token_is_unauthorized_without_verifier(client):
    app.dependency_overrides.pop(get_token_verifier)
    res = client.delete(f"/lessons/{ObjectId()}")
    assert res.status_code == 401
    assert res.headers["WWW-Authenticate"] == "Bearer"


class FakeMongoClient:
    closed = False

    def close(self):
        self.closed = True


def test_lifespan_closes_client_on_shutdown(monkeypatch):
    fake = FakeMongoClient()
    monkeypatch.setattr(main, "connect", lambda url, name: (fake, mongomock.MongoClient()[name]))
    monkeypatch.setattr(config, "FB_SERVICE_KEY", None)
    with TestClient(app) as client:
        assert client.get("/").status_code == 200
        assert not fake.closed
    assert fake.closed


def test_lifespan_closes_client_when_startup_fails(monkeypatch):
    fake = FakeMongoClient()
    monkeypatch.setattr(main, "connect", lambda url, name: (fake, mongomock.MongoClient()[name]))
    monkeypatch.setattr(config, "FB_SERVICE_KEY", "bm90IGpzb24=")

    def broken_key(encoded_key):
        raise ValueError("service key is not valid JSON")

    monkeypatch.setattr(main.FirebaseVerifier, "from_service_key", broken_key)
    with pytest.raises(Exception):
        with TestClient(app):
            pass
    assert fake.closed


def test_stripe_session_carries_buyer_email(monkeypatch):
    calls = {}

    def fake_create(**kwargs):
        calls.update(kwargs)
        return {"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1",
                "payment_status": "unpaid", "metadata": {"email": "buyer@journal.test"}}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    gateway = StripeGateway("sk_test", "whsec", "https://journal.test/")
    session = gateway.create_session(CartItem(name="Premium", price=15.5, quantity=2, email="buyer@journal.test"))

    assert session.url == "https://checkout.stripe.com/c/cs_1"
    assert session.email == "buyer@journal.test"
    assert calls["metadata"] == {"email": "buyer@journal.test"}
    assert calls["line_items"][0]["price_data"]["unit_amount"] == 1550
    assert calls["line_items"][0]["quantity"] == 2
    assert calls["success_url"] == "https://journal.test/payment-success?session_id={CHECKOUT_SESSION_ID}"


def test_stripe_errors_become_payment_errors(monkeypatch):
    def fail(*args, **kwargs):
        raise stripe.InvalidRequestError("No such checkout.session", "id")
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fail)
    with pytest.raises(PaymentError):
        StripeGateway("sk_test", "whsec", "https://journal.test").retrieve_session("cs_missing")


def test_unconfigured_stripe():
    with pytest.raises(PaymentError):
        StripeGateway(None, None, "https://journal.test").retrieve_session("cs_1")


def test_parse_event(monkeypatch):
    def construct(payload, sig_header, secret):
        if sig_header != "good":
            raise stripe.SignatureVerificationError("bad signature", sig_header)
        return {"type": SESSION_COMPLETED, "data": {"object": {
            "id": "cs_1", "payment_status": "paid", "metadata": {"email": "buyer@journal.test"}}}}

    monkeypatch.setattr(stripe.Webhook, "construct_event", construct)
    gateway = StripeGateway("sk_test", "whsec", "https://journal.test")
    event = gateway.parse_event(b"{}", "good")
    assert event.session.payment_status == "paid"
    assert event.session.email == "buyer@journal.test"
    with pytest.raises(InvalidEvent):
        gateway.parse_event(b"{}", "forged")
