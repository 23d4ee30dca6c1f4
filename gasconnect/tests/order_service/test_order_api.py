import asyncio
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from gasconnect.common import create_schema, dispose_engines, get_session_factory
from gasconnect.order_service.app.clients import AuthenticatedUser, AuthResult
from gasconnect.order_service.app.main import create_app
from gasconnect.order_service.app.models import Base
from gasconnect.tests.helpers import (
    ADMIN_ID,
    CUSTOMER_ID,
    DRIVER_ID,
    OTHER_CUSTOMER_ID,
    Seeder,
    make_settings,
    north_of_home,
)


class _StubIdentity:
    def __init__(self, users: dict[str, tuple[int, str]]) -> None:
        self.users = users

    async def validate_token(self, token: str) -> AuthResult:
        if token not in self.users:
            return AuthResult(is_valid=False, error="Invalid or expired token")
        user_id, role = self.users[token]
        return AuthResult(is_valid=True, user=AuthenticatedUser(id=user_id, role=role))


def _identity(catalog) -> _StubIdentity:
    return _StubIdentity(
        {
            "customer": (CUSTOMER_ID, "household"),
            "other-customer": (OTHER_CUSTOMER_ID, "household"),
            "admin": (ADMIN_ID, "platform_admin"),
            "driver": (DRIVER_ID, "delivery_driver"),
            "best-supplier": (catalog.best.id, "supplier"),
            "near-supplier": (catalog.near.id, "supplier"),
        }
    )


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _order_body(catalog, *items) -> dict:
    return {
        "deliveryAddressId": catalog.home.id,
        "items": [
            {"gasTypeId": catalog.lpg.id, "cylinderSize": size, "quantity": quantity}
            for size, quantity in (items or (("12.5kg", 2),))
        ],
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield


@asynccontextmanager
async def _api(database_url, catalog):
    app = create_app(make_settings(database_url))
    async with lifespan(app):
        app.state.identity_client = _identity(catalog)
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.mark.asyncio
async def test_create_order_returns_priced_order(database_url, catalog, event_log) -> None:
    async with _api(database_url, catalog) as client:
        response = await client.post("/orders", json=_order_body(catalog), headers=_auth("customer"))

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["customerId"] == CUSTOMER_ID
    assert body["orderNumber"].startswith("GC")
    assert body["currency"] == "NGN"
    assert body["subtotal"] == "14000.00"
    assert body["taxAmount"] == "1050.00"
    assert body["deliveryFee"] == "700.00"
    assert body["emergencySurcharge"] == "0.00"
    assert body["totalAmount"] == "15750.00"
    [item] = body["items"]
    assert item["unitPrice"] == "7000.00"
    assert item["supplierId"] == catalog.best.id
    assert item["pricingSource"] == "rule"
    assert item["reservationId"] is not None
    assert [entry["newStatus"] for entry in body["statusHistory"]] == ["pending"]
    assert body["delivery"] is None
    assert event_log.keys()[0] == "order.created"


@pytest.mark.asyncio
async def test_requests_without_valid_token_are_rejected(database_url, catalog) -> None:
    async with _api(database_url, catalog) as client:
        missing = await client.post("/orders", json=_order_body(catalog))
        wrong_scheme = await client.get("/orders", headers={"Authorization": "Basic abc"})
        unknown = await client.get("/orders", headers=_auth("stolen"))

    for response in (missing, wrong_scheme, unknown):
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"
    assert unknown.json()["error"]["message"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_malformed_body_is_a_validation_error(database_url, catalog) -> None:
    async with _api(database_url, catalog) as client:
        response = await client.post(
            "/orders", json={"deliveryAddressId": catalog.home.id, "items": []}, headers=_auth("customer")
        )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert [entry["field"] for entry in error["details"]["errors"]] == ["items"]


@pytest.mark.asyncio
async def test_unavailable_items_are_reported(database_url, seeder, catalog) -> None:
    async with _api(database_url, catalog) as client:
        response = await client.post(
            "/orders", json=_order_body(catalog, ("12.5kg", 1), ("25kg", 2)), headers=_auth("customer")
        )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "BUSINESS_LOGIC_ERROR"
    assert [(entry["index"], entry["cylinderSize"]) for entry in error["details"]["unavailableItems"]] == [
        (1, "25kg")
    ]
    assert await seeder.order_count() == 0


@pytest.mark.asyncio
async def test_non_customers_cannot_place_orders(database_url, catalog) -> None:
    async with _api(database_url, catalog) as client:
        response = await client.post("/orders", json=_order_body(catalog), headers=_auth("driver"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_listing_is_scoped_to_the_caller(database_url, catalog) -> None:
    async with _api(database_url, catalog) as client:
        first = (await client.post("/orders", json=_order_body(catalog), headers=_auth("customer"))).json()
        await client.post(
            "/orders",
            json={**_order_body(catalog, ("12.5kg", 1)), "isEmergency": True},
            headers=_auth("customer"),
        )
        await client.patch(
            f"/orders/{first['id']}/status", json={"status": "cancelled"}, headers=_auth("customer")
        )

        mine = (await client.get("/orders", headers=_auth("customer"))).json()
        theirs = (await client.get("/orders", headers=_auth("other-customer"))).json()
        everything = (await client.get("/orders", headers=_auth("admin"))).json()
        cancelled = (await client.get("/orders?status=cancelled", headers=_auth("admin"))).json()
        emergencies = (await client.get("/orders?emergency=true", headers=_auth("customer"))).json()
        best_view = (await client.get("/orders", headers=_auth("best-supplier"))).json()
        paged = (await client.get("/orders?limit=1&offset=1", headers=_auth("customer"))).json()

    assert mine["total"] == 2
    assert theirs == {"items": [], "total": 0}
    assert everything["total"] == 2
    assert [order["id"] for order in cancelled["items"]] == [first["id"]]
    assert [order["isEmergency"] for order in emergencies["items"]] == [True]
    assert best_view["total"] == 1
    assert paged["total"] == 2
    assert len(paged["items"]) == 1


@pytest.mark.asyncio
async def test_other_customers_order_is_not_found(database_url, catalog) -> None:
    async with _api(database_url, catalog) as client:
        created = (await client.post("/orders", json=_order_body(catalog), headers=_auth("customer"))).json()
        own = await client.get(f"/orders/{created['id']}", headers=_auth("customer"))
        foreign = await client.get(f"/orders/{created['id']}", headers=_auth("other-customer"))
        missing = await client.get("/orders/9999", headers=_auth("admin"))

    assert own.status_code == 200
    assert own.json()["id"] == created["id"]
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "NOT_FOUND"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_status_updates_and_delivery_tracking(database_url, seeder, catalog) -> None:
    async with _api(database_url, catalog) as client:
        order = (await client.post("/orders", json=_order_body(catalog), headers=_auth("customer"))).json()
        url = f"/orders/{order['id']}"

        illegal = await client.patch(f"{url}/status", json={"status": "delivered"}, headers=_auth("best-supplier"))
        confirmed = await client.patch(
            f"{url}/status", json={"status": "confirmed", "reason": "Stock ready"}, headers=_auth("best-supplier")
        )
        await client.patch(f"{url}/status", json={"status": "preparing"}, headers=_auth("best-supplier"))
        dispatched = await client.patch(f"{url}/status", json={"status": "out_for_delivery"}, headers=_auth("driver"))

        latitude, longitude = north_of_home(10)
        moved = await client.put(
            f"{url}/delivery/location", json={"latitude": latitude, "longitude": longitude}, headers=_auth("driver")
        )
        out_of_range = await client.put(
            f"{url}/delivery/location", json={"latitude": 123, "longitude": longitude}, headers=_auth("driver")
        )
        tracking = await client.get(f"{url}/tracking", headers=_auth("customer"))
        arrived = await client.put(
            f"{url}/delivery/location",
            json={"latitude": latitude, "longitude": longitude, "status": "delivered"},
            headers=_auth("driver"),
        )
        final = await client.get(url, headers=_auth("customer"))

    assert illegal.status_code == 400
    assert illegal.json()["error"]["details"] == {"from": "pending", "to": "delivered", "role": "supplier"}
    assert confirmed.status_code == 200
    assert confirmed.json()["delivery"]["status"] == "assigned"
    assert confirmed.json()["statusHistory"][-1]["reason"] == "Stock ready"
    assert dispatched.json()["delivery"]["driverId"] == DRIVER_ID

    assert moved.status_code == 200
    assert moved.json()["estimatedMinutes"] == 20
    assert moved.json()["orderStatus"] == "out_for_delivery"
    assert out_of_range.status_code == 400
    assert out_of_range.json()["error"]["details"]["errors"][0]["field"] == "latitude"

    tracked = tracking.json()
    assert tracked["orderId"] == order["id"]
    assert tracked["estimatedMinutes"] == 20
    assert tracked["distanceKm"] == pytest.approx(10.0, abs=0.01)
    assert len(tracked["history"]) == 1

    assert arrived.json()["orderStatus"] == "delivered"
    assert final.json()["status"] == "delivered"
    assert final.json()["deliveredAt"] is not None
    stored = await seeder.get_inventory(catalog.best_large.id)
    assert (stored.quantity_available, stored.quantity_reserved) == (8, 0)


@pytest.mark.asyncio
async def test_inventory_reservation_endpoints(database_url, seeder, catalog) -> None:
    reservation_body = {
        "supplierId": catalog.near.id,
        "gasTypeId": catalog.lpg.id,
        "cylinderSize": "12.5KG",
        "quantity": 4,
        "orderRef": "walk-in-7",
    }
    async with _api(database_url, catalog) as client:
        foreign = await client.post("/inventory/reservations", json=reservation_body, headers=_auth("best-supplier"))
        created = await client.post("/inventory/reservations", json=reservation_body, headers=_auth("near-supplier"))
        reservation_id = created.json()["id"]
        released = await client.post(
            f"/inventory/reservations/{reservation_id}/release",
            json={"reason": "customer left"},
            headers=_auth("admin"),
        )
        too_many = await client.post(
            "/inventory/reservations", json={**reservation_body, "quantity": 11}, headers=_auth("near-supplier")
        )
        low_stock = await client.get("/inventory/low-stock", headers=_auth("near-supplier"))
        customer_report = await client.get("/inventory/low-stock", headers=_auth("customer"))

    assert foreign.status_code == 404
    assert created.status_code == 201
    assert created.json()["status"] == "active"
    assert created.json()["orderRef"] == "walk-in-7"
    assert released.json()["status"] == "released"
    assert released.json()["releaseReason"] == "customer left"
    assert too_many.status_code == 422
    assert too_many.json()["error"]["code"] == "INSUFFICIENT_INVENTORY"
    assert low_stock.json()["total"] == 1
    assert low_stock.json()["items"][0]["inventoryId"] == catalog.near_jumbo.id
    assert low_stock.json()["items"][0]["urgency"] == "critical"
    assert customer_report.status_code == 404
    assert (await seeder.get_inventory(catalog.near_large.id)).quantity_reserved == 0


@pytest.mark.asyncio
async def test_driver_assignment_and_delivery_listing(database_url, catalog, event_log) -> None:
    async with _api(database_url, catalog) as client:
        order = (await client.post("/orders", json=_order_body(catalog), headers=_auth("customer"))).json()
        url = f"/orders/{order['id']}"
        early = await client.post(f"{url}/delivery/assign", json={"driverId": DRIVER_ID}, headers=_auth("admin"))
        await client.patch(f"{url}/status", json={"status": "confirmed"}, headers=_auth("best-supplier"))
        hidden = await client.get("/deliveries", headers=_auth("driver"))
        by_customer = await client.post(
            f"{url}/delivery/assign", json={"driverId": DRIVER_ID}, headers=_auth("customer")
        )
        by_stranger = await client.post(
            f"{url}/delivery/assign", json={"driverId": DRIVER_ID}, headers=_auth("near-supplier")
        )
        bad_body = await client.post(f"{url}/delivery/assign", json={"driverId": 0}, headers=_auth("best-supplier"))
        assigned = await client.post(
            f"{url}/delivery/assign",
            json={"driverId": DRIVER_ID, "scheduledDate": "2099-01-15", "notes": "Gate code 4411"},
            headers=_auth("best-supplier"),
        )
        driver_list = await client.get("/deliveries", headers=_auth("driver"))
        in_transit = await client.get("/deliveries?status=in_transit", headers=_auth("admin"))
        driver_view = await client.get(url, headers=_auth("driver"))

    assert early.status_code == 400
    assert hidden.json() == {"items": [], "total": 0}
    assert by_customer.status_code == 400
    assert by_stranger.status_code == 404
    assert bad_body.status_code == 400
    assert assigned.status_code == 200
    assert assigned.json()["driverId"] == DRIVER_ID
    assert assigned.json()["scheduledDate"] == "2099-01-15"
    assert assigned.json()["assignedBy"] == catalog.best.id
    [listed] = driver_list.json()["items"]
    assert listed["orderId"] == order["id"]
    assert listed["orderNumber"] == order["orderNumber"]
    assert listed["orderStatus"] == "confirmed"
    assert listed["totalAmount"] == order["totalAmount"]
    assert in_transit.json()["total"] == 0
    assert driver_view.status_code == 200
    assert [event["driverId"] for event in event_log.of("delivery.assigned")] == [DRIVER_ID]


def _run(coro):
    return asyncio.run(coro)


async def _seed_for_websocket(database_url: str):
    await create_schema(database_url, Base.metadata)
    seeder = Seeder(get_session_factory(database_url))
    lpg = await seeder.gas_type()
    supplier = await seeder.supplier("Best Gas", rating=5.0, distance_km=4.0)
    home = await seeder.address(CUSTOMER_ID)
    await seeder.inventory(supplier, lpg, "12.5kg", available=10)
    return lpg, supplier, home


def test_websocket_streams_status_changes(tmp_path) -> None:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'ws.db'}"
    lpg, supplier, home = _run(_seed_for_websocket(database_url))
    _run(dispose_engines())
    identity = _StubIdentity(
        {
            "customer": (CUSTOMER_ID, "household"),
            "other-customer": (OTHER_CUSTOMER_ID, "household"),
            "supplier": (supplier.id, "supplier"),
        }
    )
    app = create_app(make_settings(database_url))

    with TestClient(app) as client:
        app.state.identity_client = identity
        created = client.post(
            "/orders",
            json={
                "deliveryAddressId": home.id,
                "items": [{"gasTypeId": lpg.id, "cylinderSize": "12.5kg", "quantity": 1}],
            },
            headers=_auth("customer"),
        )
        order_id = created.json()["id"]

        with client.websocket_connect(f"/ws/orders/{order_id}?token=customer") as websocket:
            assert websocket.receive_json() == {"type": "subscribed", "orderId": order_id, "status": "pending"}
            client.patch(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=_auth("supplier"))
            message = websocket.receive_json()

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/orders/{order_id}?token=other-customer") as websocket:
                websocket.receive_json()
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/orders/{order_id}") as websocket:
                websocket.receive_json()

    assert created.status_code == 201
    assert message["type"] == "order_status_changed"
    assert message["orderId"] == order_id
    assert message["data"]["status"] == "confirmed"
    assert message["data"]["previousStatus"] == "pending"
