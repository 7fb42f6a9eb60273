"""Tests for the service and provider endpoints and notifications."""

from unittest.mock import AsyncMock

import aiosmtplib
import pytest

import notifications


class TestServices:
    def test_list_active_services(self, client, service, other_service, mongo_db):
        mongo_db["service"].insert_one({"name": "Old", "description": "", "type": "home", "options": [], "isActive": False})
        names = [s["name"] for s in client.get("/services").json()["services"]]
        assert sorted(names) == ["Home Cleaning", "Window Cleaning"]

    def test_filter_by_type_and_query(self, client, service, other_service):
        assert [s["name"] for s in client.get("/services?type=windows").json()["services"]] == ["Window Cleaning"]
        assert [s["name"] for s in client.get("/services?q=regular").json()["services"]] == ["Home Cleaning"]

    def test_get_service(self, client, service):
        body = client.get(f"/services/{service['_id']}").json()
        assert body["service"]["id"] == str(service["_id"])
        assert body["service"]["options"][0]["price"] == "€10"

    def test_admin_creates_service_with_option_ids(self, client, admin_headers):
        payload = {
            "name": "Deep Clean",
            "description": "Top to bottom",
            "type": "home",
            "options": [{"name": "Oven", "icon": "oven", "price": "€15"}],
        }
        response = client.post("/admin/services", json=payload, headers=admin_headers)
        assert response.status_code == 201
        option = response.json()["service"]["options"][0]
        assert option["id"]
        assert option["price"] == "€15"

    def test_customer_cannot_create_service(self, client, customer_headers):
        payload = {"name": "X", "description": "Y", "type": "home"}
        assert client.post("/admin/services", json=payload, headers=customer_headers).status_code == 403

    def test_admin_updates_and_deletes(self, client, admin_headers, service):
        url = f"/admin/services/{service['_id']}"
        payload = {"name": "Home Cleaning", "description": "Updated", "type": "home",
                   "options": [{"id": "a", "name": "Bedroom", "icon": "bed", "price": "€12"}]}
        updated = client.put(url, json=payload, headers=admin_headers).json()["service"]
        assert updated["description"] == "Updated"
        assert updated["options"] == [{"id": "a", "name": "Bedroom", "icon": "bed", "price": "€12", "description": None}]
        assert client.delete(url, headers=admin_headers).json()["deleted"] is True
        assert client.get(f"/services/{service['_id']}").status_code == 404


class TestProviders:
    def test_filter_by_service(self, client, provider, service, other_service):
        providers = client.get(f"/providers?service_id={service['_id']}").json()["providers"]
        assert [p["name"] for p in providers] == ["Sparkle Co"]
        assert client.get(f"/providers?service_id={other_service['_id']}").json()["providers"] == []

    def test_provider_service_uses_override(self, client, provider, service):
        body = client.get(f"/providers/{provider['_id']}/services/{service['_id']}").json()
        options = {o["id"]: o["price"] for o in body["service"]["options"]}
        assert options == {"a": "€8", "b": "€5"}
        assert body["service"]["providerId"] == str(provider["_id"])

    def test_provider_service_not_offered(self, client, provider, other_service):
        response = client.get(f"/providers/{provider['_id']}/services/{other_service['_id']}")
        assert response.status_code == 404

    def test_admin_creates_provider(self, client, admin_headers, service):
        payload = {"name": "Ana", "title": "Cleaner", "description": "Independent", "email": "ana@example.com",
                   "type": "person", "services": [str(service["_id"])]}
        response = client.post("/admin/providers", json=payload, headers=admin_headers)
        assert response.status_code == 201
        assert response.json()["provider"]["optionPrices"] == {}

    def test_invalid_provider_type(self, client, admin_headers):
        payload = {"name": "Ana", "title": "Cleaner", "description": "x", "email": "ana@example.com", "type": "robot"}
        assert client.post("/admin/providers", json=payload, headers=admin_headers).status_code == 400


class TestConfig:
    def test_health(self, client):
        assert client.get("/").json()["status"] == "ok"

    def test_config(self, client):
        body = client.get("/config").json()
        assert body["currency"] == "EUR"
        assert body["taxRate"] == 0.2
        assert body["payments"]["card"] is True


class TestNotifications:
    ORDER = {
        "_id": "abc",
        "selectedOptions": [{"name": "Bedroom", "quantity": 2, "price": "€10"}],
        "totalAmount": 20,
        "tax": 4,
        "grandTotal": 24,
        "currency": "EUR",
        "scheduledDate": "2030-01-15",
        "timeSlot": {"start": "09:00", "end": "12:00"},
        "paymentMethod": "card",
        "paymentDetails": {"transactionId": "card_1"},
    }

    @pytest.mark.asyncio
    async def test_skipped_without_smtp(self, monkeypatch):
        send = AsyncMock()
        monkeypatch.setattr(notifications, "SMTP_HOST", None)
        monkeypatch.setattr(notifications.aiosmtplib, "send", send)
        assert await notifications.send_order_confirmation("jane@example.com", self.ORDER) is False
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_recipient(self):
        assert await notifications.send_payment_receipt(None, self.ORDER) is False

    @pytest.mark.asyncio
    async def test_sends_with_starttls_and_login(self, monkeypatch):
        send = AsyncMock(return_value=({}, "OK"))
        monkeypatch.setattr(notifications, "SMTP_HOST", "smtp.example.com")
        monkeypatch.setattr(notifications, "SMTP_USER", "mailer")
        monkeypatch.setattr(notifications, "SMTP_PASSWORD", "hunter2")
        monkeypatch.setattr(notifications.aiosmtplib, "send", send)

        assert await notifications.send_payment_receipt("jane@example.com", self.ORDER) is True
        message = send.await_args.args[0]
        assert message["To"] == "jane@example.com"
        assert "card_1" in message.get_content()
        kwargs = send.await_args.kwargs
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["start_tls"] is True
        assert (kwargs["username"], kwargs["password"]) == ("mailer", "hunter2")

    @pytest.mark.asyncio
    async def test_smtp_failure_is_logged(self, monkeypatch, caplog):
        send = AsyncMock(side_effect=aiosmtplib.SMTPConnectError("unavailable"))
        monkeypatch.setattr(notifications, "SMTP_HOST", "smtp.example.com")
        monkeypatch.setattr(notifications.aiosmtplib, "send", send)
        assert await notifications.send_payment_receipt("jane@example.com", self.ORDER) is False
        assert "Failed to send" in caplog.text
