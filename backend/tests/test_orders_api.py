"""
API Integration Tests — order lifecycle endpoints with seeded data.
"""

import pytest
from httpx import AsyncClient


@pytest.fixture
def as_client(mock_user, seeded_db):
    mock_user.update(seeded_db["client_claims"])
    return mock_user


@pytest.fixture
def as_admin(mock_user, seeded_db):
    mock_user.update(seeded_db["admin_claims"])
    return mock_user


def _order_body(seeded_db, **extra):
    return {
        "items": [
            {"coral_id": seeded_db["acropora"].coral_id, "quantity": 2, "price": 45.00},
            {"coral_id": seeded_db["montipora"].coral_id, "quantity": 1, "price": 17.99},
        ],
        "notes": "Bring a cooler",
        **extra,
    }


@pytest.mark.asyncio
class TestClientOrders:

    async def test_client_places_order(self, client: AsyncClient, seeded_db, as_client):
        """Client order gets discounted prices and a pending status."""
        resp = await client.post("/api/v1/orders/", json=_order_body(seeded_db))
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending"
        assert data["total_amount"] == pytest.approx(107.99)
        assert data["client"]["email"] == "marina@example.com"
        assert {item["species_name"] for item in data["items"]} == {"Acropora Millepora", "Montipora Cap"}

    async def test_tampered_price_is_rejected(self, client: AsyncClient, seeded_db, as_client):
        body = _order_body(seeded_db)
        body["items"][0]["price"] = 1.00
        resp = await client.post("/api/v1/orders/", json=body)
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid price submitted for Acropora Millepora"

    async def test_insufficient_stock_is_rejected(self, client: AsyncClient, seeded_db, as_client):
        body = {"items": [{"coral_id": seeded_db["montipora"].coral_id, "quantity": 50}]}
        resp = await client.post("/api/v1/orders/", json=body)
        assert resp.status_code == 400
        assert "Insufficient stock" in resp.json()["message"]

    async def test_empty_order_fails_validation(self, client: AsyncClient, seeded_db, as_client):
        resp = await client.post("/api/v1/orders/", json={"items": []})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Validation failed"

    async def test_client_lists_only_own_orders(self, client: AsyncClient, seeded_db, as_client):
        await client.post("/api/v1/orders/", json=_order_body(seeded_db))
        resp = await client.get("/api/v1/orders/")
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    async def test_client_can_cancel_own_order(self, client: AsyncClient, seeded_db, as_client):
        order_id = (await client.post("/api/v1/orders/", json=_order_body(seeded_db))).json()["order_id"]
        resp = await client.post(f"/api/v1/orders/{order_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["stock_restored"] is True

        coral = await client.get(f"/api/v1/corals/{seeded_db['acropora'].coral_id}")
        assert coral.json()["quantity"] == 10

    async def test_client_cannot_change_status(self, client: AsyncClient, seeded_db, as_client):
        order_id = (await client.post("/api/v1/orders/", json=_order_body(seeded_db))).json()["order_id"]
        resp = await client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "confirmed"})
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestAdminOrders:

    async def _place(self, client: AsyncClient, seeded_db) -> int:
        body = _order_body(seeded_db, client_id=seeded_db["client"].client_id)
        resp = await client.post("/api/v1/orders/", json=body)
        assert resp.status_code == 201
        return resp.json()["order_id"]

    async def test_admin_places_order_for_client(self, client: AsyncClient, seeded_db, as_admin):
        order_id = await self._place(client, seeded_db)
        resp = await client.get(f"/api/v1/orders/{order_id}")
        assert resp.status_code == 200
        assert resp.json()["client_id"] == seeded_db["client"].client_id

    async def test_admin_without_client_is_rejected(self, client: AsyncClient, seeded_db, as_admin):
        resp = await client.post("/api/v1/orders/", json=_order_body(seeded_db))
        assert resp.status_code == 400

    async def test_status_can_be_corrected_backwards(self, client: AsyncClient, seeded_db, as_admin):
        order_id = await self._place(client, seeded_db)
        resp = await client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "processing"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "processing"

        resp = await client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "confirmed"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "confirmed"

    async def test_unknown_status_fails_validation(self, client: AsyncClient, seeded_db, as_admin):
        order_id = await self._place(client, seeded_db)
        resp = await client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "shipped"})
        assert resp.status_code == 400

    async def test_archive_flow(self, client: AsyncClient, seeded_db, as_admin):
        """Complete, pay, archive; the archived order still renders from snapshots."""
        order_id = await self._place(client, seeded_db)
        await client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "completed"})

        resp = await client.post(f"/api/v1/orders/{order_id}/archive")
        assert resp.status_code == 400
        assert resp.json()["message"] == "Cannot archive unpaid orders"

        assert (await client.post(f"/api/v1/orders/{order_id}/paid")).json()["paid"] is True
        resp = await client.post(f"/api/v1/orders/{order_id}/archive")
        assert resp.status_code == 200
        data = resp.json()
        assert data["archived"] is True
        assert data["client_id"] is None
        assert data["client"]["name"] == "Marina Reef"
        assert len(data["items"]) == 2

        resp = await client.post(f"/api/v1/orders/{order_id}/unpaid")
        assert resp.status_code == 400

        resp = await client.post("/api/v1/orders/purge-archived")
        assert resp.json() == {"deleted": 1}

    async def test_delete_requires_terminal_status(self, client: AsyncClient, seeded_db, as_admin):
        order_id = await self._place(client, seeded_db)
        resp = await client.delete(f"/api/v1/orders/{order_id}")
        assert resp.status_code == 400

        await client.post(f"/api/v1/orders/{order_id}/cancel")
        resp = await client.delete(f"/api/v1/orders/{order_id}")
        assert resp.status_code == 204
        assert (await client.get(f"/api/v1/orders/{order_id}")).status_code == 404

    async def test_order_not_found(self, client: AsyncClient, seeded_db, as_admin):
        resp = await client.get("/api/v1/orders/9999")
        assert resp.status_code == 404
        assert resp.json() == {"message": "Order not found"}
