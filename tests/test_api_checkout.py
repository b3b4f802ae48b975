"""
Tests for the checkout API endpoints.

Runs the full stack against the SQL reference backends on an in-memory
database. Codes are captured from LocalOtpProvider through sent_codes.
"""

import pytest

TICKET = {"id": "ticket", "name": "Gala ticket", "base_price": 50.0}

CONTACT = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@gmail.com",
    "mobile_number": "2015551234",
}


def start(client, variant="event_registration", role="guest"):
    response = client.post("/checkout/start", json={"variant": variant, "role": role})
    assert response.status_code == 200
    return response.json()["flow_id"]


def send(client, flow_id, event_type, **payload):
    response = client.post(f"/checkout/{flow_id}/events", json={"type": event_type, "payload": payload})
    assert response.status_code == 200, response.text
    return response.json()


def submit_contact(client, flow_id):
    send(client, flow_id, "ADD_TO_CART", item=TICKET)
    send(client, flow_id, "CHECKOUT")
    for field, value in CONTACT.items():
        send(client, flow_id, "UPDATE_FIELD", field=field, value=value)
    return send(client, flow_id, "SUBMIT_CONTACT")


def verify_by_sms(client, flow_id, sent_codes):
    body = send(client, flow_id, "CHOOSE_SMS")
    assert body["snapshot"]["state"] == "enteringCode"
    return send(client, flow_id, "SUBMIT_CODE", code=sent_codes["+12015551234"])


@pytest.fixture
def paid_customer(client, sent_codes):
    """Run one checkout to completion so an account with a saved card exists."""
    flow_id = start(client)
    submit_contact(client, flow_id)
    verify_by_sms(client, flow_id, sent_codes)
    body = send(client, flow_id, "SUBMIT_NONCE", nonce="cnon:card-nonce-ok")
    assert body["snapshot"]["state"] == "success"
    return body["snapshot"]


class TestStart:

    def test_start_returns_snapshot(self, client):
        response = client.post("/checkout/start", json={"variant": "catering"})

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "reviewingCart"
        assert data["variant"] == "catering"
        assert data["busy"] is False
        assert response.headers["X-Request-ID"]

    def test_unknown_variant(self, client):
        response = client.post("/checkout/start", json={"variant": "timeshare"})
        assert response.status_code == 422

    def test_health(self, client):
        start(client)
        assert client.get("/health").json() == {"status": "ok", "active_flows": 1}


class TestCheckoutFlow:

    def test_new_customer_pays_with_new_card(self, client, sent_codes):
        flow_id = start(client)

        body = submit_contact(client, flow_id)
        assert body["snapshot"]["state"] == "authenticationChoice"
        assert body["snapshot"]["selection"] == "new"

        body = verify_by_sms(client, flow_id, sent_codes)
        snapshot = body["snapshot"]
        assert snapshot["verified"] is True
        assert snapshot["state"] == "enterNewCard"

        body = send(client, flow_id, "SUBMIT_NONCE", nonce="cnon:card-nonce-ok")
        snapshot = body["snapshot"]
        assert snapshot["state"] == "success"
        assert snapshot["receipt"]["amount"] == 50.0
        assert snapshot["saved_cards"][0]["last4"] == "1111"

    def test_returning_customer_selects_account(self, client, sent_codes, paid_customer):
        flow_id = start(client)

        snapshot = submit_contact(client, flow_id)["snapshot"]
        assert snapshot["state"] == "selectingAccount"
        account_id = snapshot["candidates"][0]["account_id"]

        send(client, flow_id, "SELECT_ACCOUNT", account_id=account_id)
        snapshot = send(client, flow_id, "CONFIRM_ACCOUNT")["snapshot"]
        assert snapshot["selection"] == "existing"

        snapshot = verify_by_sms(client, flow_id, sent_codes)["snapshot"]
        assert snapshot["state"] == "confirmSavedCard"
        assert snapshot["selected_card_id"] == snapshot["saved_cards"][0]["id"]

        snapshot = send(client, flow_id, "PAY_WITH_SAVED_CARD")["snapshot"]
        assert snapshot["state"] == "success"

    def test_duplicate_card_refused(self, client, sent_codes, paid_customer):
        flow_id = start(client)
        snapshot = submit_contact(client, flow_id)["snapshot"]
        send(client, flow_id, "SELECT_ACCOUNT", account_id=snapshot["candidates"][0]["account_id"])
        send(client, flow_id, "CONFIRM_ACCOUNT")
        verify_by_sms(client, flow_id, sent_codes)
        send(client, flow_id, "USE_NEW_CARD")

        snapshot = send(client, flow_id, "SUBMIT_NONCE", nonce="cnon:card-nonce-ok")["snapshot"]

        assert snapshot["state"] == "enterNewCard"
        assert snapshot["error"]["kind"] == "DuplicateCard"
        assert len(snapshot["saved_cards"]) == 1

    def test_wrong_code(self, client, sent_codes):
        flow_id = start(client)
        submit_contact(client, flow_id)
        send(client, flow_id, "CHOOSE_SMS")
        wrong = "000000" if sent_codes["+12015551234"] != "000000" else "111111"

        snapshot = send(client, flow_id, "SUBMIT_CODE", code=wrong)["snapshot"]

        assert snapshot["state"] == "enteringCode"
        assert snapshot["error"]["kind"] == "AuthRejected"
        assert snapshot["code_session"]["attempts_remaining"] == 4

    def test_declined_card(self, client, sent_codes):
        flow_id = start(client)
        submit_contact(client, flow_id)
        verify_by_sms(client, flow_id, sent_codes)

        snapshot = send(client, flow_id, "SUBMIT_NONCE", nonce="cnon:card-nonce-declined")["snapshot"]

        assert snapshot["state"] == "enterNewCard"
        assert snapshot["error"]["kind"] == "PaymentError"
        assert snapshot["receipt"] is None

    def test_snapshot_hides_secrets(self, client, sent_codes):
        flow_id = start(client)
        submit_contact(client, flow_id)
        send(client, flow_id, "CHOOSE_SMS")

        response = client.get(f"/checkout/{flow_id}")

        assert response.status_code == 200
        assert sent_codes["+12015551234"] not in response.text
        assert "sid" not in response.json()["code_session"]

    def test_illegal_event_not_accepted(self, client):
        flow_id = start(client)

        body = send(client, flow_id, "PAY_WITH_SAVED_CARD")

        assert body["accepted"] is False
        assert body["snapshot"]["state"] == "reviewingCart"

    def test_validation_errors_in_snapshot(self, client):
        flow_id = start(client)
        send(client, flow_id, "ADD_TO_CART", item=TICKET)
        send(client, flow_id, "CHECKOUT")

        snapshot = send(client, flow_id, "SUBMIT_CONTACT")["snapshot"]

        assert snapshot["state"] == "enteringContactInfo"
        assert set(snapshot["form_errors"]) >= {"first_name", "last_name", "email", "mobile_number"}


class TestErrors:

    def test_unknown_flow(self, client):
        response = client.post("/checkout/nope/events", json={"type": "CHECKOUT"})
        assert response.status_code == 404
        assert client.get("/checkout/nope").status_code == 404

    def test_unknown_event_type(self, client):
        flow_id = start(client)
        response = client.post(f"/checkout/{flow_id}/events", json={"type": "TELEPORT"})
        assert response.status_code == 422

    def test_malformed_payload(self, client):
        flow_id = start(client)
        response = client.post(f"/checkout/{flow_id}/events", json={"type": "ADD_TO_CART", "payload": {}})
        assert response.status_code == 422

    def test_discarded_flow_is_gone(self, client):
        flow_id = start(client)

        assert client.delete(f"/checkout/{flow_id}").status_code == 204
        assert client.get(f"/checkout/{flow_id}").status_code == 404


class TestCatalog:

    def test_modifiers(self, client):
        response = client.get("/catalog/modifiers/TRAY-1")
        assert response.status_code == 200
        assert response.json()["hasModifiers"] is False
