# tests/test_routes_quotes.py
"""
Tests d'intégration API des devis (TestClient + SQLite en mémoire)
"""

from decimal import Decimal

from core.config import get_settings

ACTOR_HEADERS = {"x-user-id": "u-42", "x-user-name": "Alice Martin"}


def create_quote(client, payload):
    response = client.post("/api/quotes/", json=payload)
    assert response.status_code == 201
    return response.json()


class TestCalculateEndpoint:
    """Tests du calcul via l'API"""

    def test_calculate(self, client):
        response = client.post("/api/quotes/calculate", json={
            "line_items": [
                {"name": "A", "quantity": 2, "unit_price": "100", "discount_percent": "10"},
                {"name": "B", "quantity": 1, "unit_price": "50"},
            ],
            "discount_total": "30",
            "tax_rate": "10",
        })

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["calculations"]["subtotal"]) == Decimal("230")
        assert Decimal(data["calculations"]["taxable_amount"]) == Decimal("200")
        assert Decimal(data["calculations"]["total"]) == Decimal("220")
        assert Decimal(data["line_items"][0]["taxable_base"]) == Decimal("180")
        assert data["rounded"]["total"] == "220.00"

    def test_calculate_empty(self, client):
        response = client.post("/api/quotes/calculate", json={"discount_total": "15", "tax_rate": "20"})

        assert response.status_code == 200
        assert Decimal(response.json()["calculations"]["total"]) == Decimal("0")

    def test_calculate_rejects_non_numeric(self, client):
        response = client.post("/api/quotes/calculate", json={"line_items": [{"name": "A", "unit_price": "abc"}]})

        assert response.status_code == 422


class TestQuoteEndpoints:
    """Tests de création, lecture et édition"""

    def test_create_quote(self, client, sample_draft_payload):
        data = create_quote(client, sample_draft_payload)

        assert data["status"] == "draft"
        assert data["can_edit"] is True
        assert Decimal(data["total"]) == Decimal("220")

    def test_create_invalid_draft_returns_field_errors(self, client):
        response = client.post("/api/quotes/", json={"customer": {"name": "Acme"}})

        assert response.status_code == 422
        errors = response.json()["detail"]["errors"]
        assert "email" in errors
        assert "line_items" in errors

    def test_get_quote_with_history(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)
        client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "sent"}, headers=ACTOR_HEADERS)

        response = client.get(f"/api/quotes/{quote['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["quote"]["status"] == "sent"
        assert data["history"][0]["changed_by"] == "u-42"
        assert data["history"][0]["changed_by_name"] == "Alice Martin"
        assert {a["status"] for a in data["available_actions"]} == {"sent", "viewed", "accepted", "rejected", "expired"}

    def test_get_unknown_quote(self, client):
        assert client.get("/api/quotes/nope").status_code == 404

    def test_list_quotes_filtered(self, client, sample_draft_payload):
        first = create_quote(client, sample_draft_payload)
        create_quote(client, sample_draft_payload)
        client.patch(f"/api/quotes/{first['id']}/status", json={"status": "pending"})

        response = client.get("/api/quotes/", params={"status": "pending"})

        assert response.status_code == 200
        assert [q["id"] for q in response.json()] == [first["id"]]

    def test_edit_quote(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)

        response = client.patch(f"/api/quotes/{quote['id']}", json={"title": "Révision", "tax_rate": "20"})

        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Révision"
        assert Decimal(data["total"]) == Decimal("240")
        assert data["version"] == 2

    def test_edit_with_invalid_lines_returns_field_errors(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)

        response = client.patch(f"/api/quotes/{quote['id']}", json={
            "line_items": [{"name": "", "quantity": -5, "unit_price": "-10", "discount_percent": "150"}],
            "discount_total": "-40",
        })

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error_code"] == "VALIDATION_ERROR"
        assert "line_items[0].name" in detail["errors"]
        assert "discount_total" in detail["errors"]

        stored = client.get(f"/api/quotes/{quote['id']}").json()["quote"]
        assert stored["version"] == 1
        assert Decimal(stored["total"]) == Decimal("220")
        assert all(item["quantity"] > 0 for item in stored["line_items"])

    def test_edit_sent_quote_conflicts(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)
        client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "sent"})

        response = client.patch(f"/api/quotes/{quote['id']}", json={"title": "Trop tard"})

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "QUOTE_NOT_EDITABLE"

    def test_edit_status_field_refused(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)

        response = client.patch(f"/api/quotes/{quote['id']}", json={"status": "accepted"})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "FIELD_NOT_EDITABLE"


class TestStatusEndpoints:
    """Tests des changements de statut"""

    def test_transition(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)

        response = client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "sent"}, headers=ACTOR_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["quote"]["status"] == "sent"
        assert data["quote"]["sent_at"] is not None
        assert data["status_change"]["from_status"] == "draft"

    def test_illegal_transition(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)

        response = client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "accepted"})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_TRANSITION"

    def test_unknown_status_value(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)

        response = client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "archived"})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_STATUS"

    def test_unknown_quote(self, client):
        response = client.patch("/api/quotes/missing/status", json={"status": "sent"})

        assert response.status_code == 404

    def test_stale_version(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)
        client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "sent", "expected_version": 1})

        response = client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "viewed", "expected_version": 1})

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "CONCURRENT_MODIFICATION"

    def test_rejection_reason(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)
        client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "sent"})

        response = client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "rejected", "comment": "Budget"})

        assert response.json()["quote"]["rejection_reason"] == "Budget"

    def test_actions(self, client, sample_draft_payload):
        quote = create_quote(client, sample_draft_payload)

        response = client.get(f"/api/quotes/{quote['id']}/actions")

        assert response.status_code == 200
        assert {a["status"] for a in response.json()["actions"]} == {"pending", "sent"}


class TestExpireEndpoint:
    """Tests du déclenchement de l'expiration"""

    def test_expire_without_key_configured(self, client, sample_draft_payload):
        payload = {**sample_draft_payload, "valid_until": "2020-01-01T00:00:00"}
        quote = create_quote(client, payload)
        client.patch(f"/api/quotes/{quote['id']}/status", json={"status": "sent"})

        response = client.post("/api/quotes/expire")

        assert response.status_code == 200
        assert response.json()["expired"] == 1
        assert client.get(f"/api/quotes/{quote['id']}").json()["quote"]["status"] == "expired"

    def test_expire_requires_configured_key(self, client, monkeypatch):
        monkeypatch.setattr(get_settings(), "expiration_api_key", "secret")

        assert client.post("/api/quotes/expire").status_code == 401
        assert client.post("/api/quotes/expire", headers={"x-api-key": "secret"}).status_code == 200


class TestHealth:
    """Tests du contrôle de santé"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status_machine"]["unreachable_states"] == ["converted"]
        assert data["status_machine"]["dead_states"] == []
