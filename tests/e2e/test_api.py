from collections.abc import AsyncGenerator, Iterator
from typing import Any
from unittest import mock
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from pytest_mock import MockerFixture

from fakes import ACTOR_ID, ORG_ID, OTHER_ORG_ID, FakeUnitOfWork, make_batch, make_order, make_product
from nursery.allocation.adapters import dto
from nursery.allocation.domain import models
from nursery.allocation.entrypoints import dependencies
from nursery.allocation.entrypoints.restapi import app

HEADERS = {"X-Actor-Id": str(ACTOR_ID), "X-Org-Id": str(ORG_ID)}
OTHER_ORG_HEADERS = {"X-Actor-Id": str(ACTOR_ID), "X-Org-Id": str(OTHER_ORG_ID)}


@pytest.fixture(autouse=True)
def overrides(uow: FakeUnitOfWork) -> Iterator[None]:
    app.dependency_overrides[dependencies.allocation_uow] = lambda: uow
    app.dependency_overrides[dependencies.session] = lambda: mock.Mock()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, Any]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
        headers={"Content-Type": "application/json"},
    ) as client:
        yield client


async def seeded_order(uow: FakeUnitOfWork, quantity: int, available: int) -> tuple[models.Order, models.Batch]:
    product = make_product(name="Hosta 'Sum and Substance'")
    batch = make_batch(product, available, batch_number="HO-2301")
    order = make_order((product, quantity))
    await uow.products.add(product)
    await uow.batches.add(batch)
    await uow.orders.add(order)
    return order, batch


async def test_confirm_returns_200_with_warnings(client: AsyncClient, uow: FakeUnitOfWork) -> None:
    # Given
    order, _ = await seeded_order(uow, quantity=10, available=4)

    # When
    res = await client.post(f"/orders/{order.id}/confirm", headers=HEADERS)

    # Then
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["has_oversell_warning"] is True
    assert body["oversell_items"][0]["quantity"] == 10


async def test_confirm_without_actor_returns_400(client: AsyncClient, uow: FakeUnitOfWork) -> None:
    order, _ = await seeded_order(uow, quantity=1, available=4)

    res = await client.post(f"/orders/{order.id}/confirm", headers={"X-Org-Id": str(ORG_ID)})

    assert res.status_code == 400
    assert res.json()["error"] == "Not authenticated"
    assert order.status == models.OrderStatus.DRAFT


async def test_picking_flow(client: AsyncClient, uow: FakeUnitOfWork) -> None:
    # Given: a confirmed order
    order, batch = await seeded_order(uow, quantity=6, available=10)
    await client.post(f"/orders/{order.id}/confirm", headers=HEADERS)

    # When: pick it from the batch
    picking = await client.post(f"/orders/{order.id}/start-picking", headers=HEADERS)
    [pending] = picking.json()["pending_batch_selections"]
    selected = await client.post(
        f"/allocations/{pending['allocation_id']}/select-batch", json={"batch_id": str(batch.id)}, headers=HEADERS
    )
    picked = await client.post(
        f"/allocations/{pending['allocation_id']}/picked", json={"picked_quantity": 5}, headers=HEADERS
    )
    dispatched = await client.post(f"/orders/{order.id}/dispatch", headers=HEADERS)

    # Then
    assert pending["product_name"] == "Hosta 'Sum and Substance'"
    assert selected.status_code == 200
    assert selected.json()["tier"] == "batch"
    assert picked.json() == {"success": True, "error": None, "picked_quantity": 5, "shortage": 1}
    assert dispatched.json() == {"success": True, "error": None, "allocations_shipped": 1}
    assert batch.available_quantity == 4


async def test_select_batch_short_returns_400(client: AsyncClient, uow: FakeUnitOfWork) -> None:
    order, batch = await seeded_order(uow, quantity=10, available=6)
    await client.post(f"/orders/{order.id}/confirm", headers=HEADERS)
    picking = await client.post(f"/orders/{order.id}/start-picking", headers=HEADERS)
    [pending] = picking.json()["pending_batch_selections"]

    res = await client.post(
        f"/allocations/{pending['allocation_id']}/select-batch", json={"batch_id": str(batch.id)}, headers=HEADERS
    )

    assert res.status_code == 400
    assert res.json()["success"] is False
    assert "HO-2301" in res.json()["error"]
    assert batch.available_quantity == 6


async def test_cancel_and_void(client: AsyncClient, uow: FakeUnitOfWork) -> None:
    order, _ = await seeded_order(uow, quantity=3, available=10)
    await client.post(f"/orders/{order.id}/confirm", headers=HEADERS)
    [allocation] = order.allocations

    cancelled = await client.post(f"/allocations/{allocation.id}/cancel", json={"reason": "dup"}, headers=HEADERS)
    voided = await client.post(f"/orders/{order.id}/void", json={"reason": "customer"}, headers=HEADERS)

    assert cancelled.json()["quantity_released"] == 3
    assert voided.json() == {"success": True, "error": None, "quantity_released": 0}
    assert order.status == models.OrderStatus.VOID


async def test_allocations_of_another_organisation_are_untouchable(client: AsyncClient, uow: FakeUnitOfWork) -> None:
    # Given: an allocation picked from a batch
    order, batch = await seeded_order(uow, quantity=3, available=10)
    await client.post(f"/orders/{order.id}/confirm", headers=HEADERS)
    await client.post(f"/orders/{order.id}/start-picking", headers=HEADERS)
    [allocation] = order.allocations
    await client.post(f"/allocations/{allocation.id}/select-batch", json={"batch_id": str(batch.id)}, headers=HEADERS)

    # When: a caller from another org tries to pick and cancel it
    picked = await client.post(f"/allocations/{allocation.id}/picked", json={}, headers=OTHER_ORG_HEADERS)
    cancelled = await client.post(f"/allocations/{allocation.id}/cancel", json={}, headers=OTHER_ORG_HEADERS)

    # Then
    assert (picked.status_code, cancelled.status_code) == (400, 400)
    assert cancelled.json()["error"] == "Not authorized to modify this order"
    assert allocation.status == models.AllocationStatus.ALLOCATED
    assert batch.available_quantity == 7


async def test_stock_status_not_found_returns_404(client: AsyncClient, mocker: MockerFixture) -> None:
    mocker.patch("nursery.allocation.adapters.dao.product_ats", return_value={})

    res = await client.get(f"/products/{uuid4()}/stock-status", headers=HEADERS)

    assert res.status_code == 404
    assert res.json() == {"data": None, "error": "Product not found"}


async def test_bulk_stock_status(client: AsyncClient, mocker: MockerFixture) -> None:
    ats = models.ProductATS(
        product_id=uuid4(),
        calculated_ats=12,
        override_ats=None,
        tier1_reserved=0,
        low_stock_threshold=10,
        allow_oversell=True,
    )
    product_ats = mocker.patch("nursery.allocation.adapters.dao.product_ats", return_value={ats.product_id: ats})

    res = await client.get("/products/stock-status", params={"product_ids": [str(ats.product_id)]}, headers=HEADERS)

    assert res.status_code == 200
    assert res.json()["data"][str(ats.product_id)]["stock_status"] == "in_stock"
    assert product_ats.call_args.args[:2] == (ORG_ID, [ats.product_id])


async def test_available_batches_passes_filters(client: AsyncClient, mocker: MockerFixture) -> None:
    product_id = uuid4()
    candidates = mocker.patch("nursery.allocation.adapters.dao.allocation_candidates", return_value=[])

    res = await client.get(
        f"/products/{product_id}/batches", params={"variety": "blue", "location": "tunnel"}, headers=HEADERS
    )

    assert res.status_code == 200
    assert res.json() == {"data": [], "error": None}
    assert candidates.call_args.kwargs == {"variety_filter": "blue", "location_filter": "tunnel"}


async def test_order_allocations(client: AsyncClient, mocker: MockerFixture) -> None:
    order_id = uuid4()
    row = dto.OrderAllocation(
        id=uuid4(),
        order_item_id=uuid4(),
        product_id=uuid4(),
        batch_id=None,
        tier=models.AllocationTier.PRODUCT,
        status=models.AllocationStatus.RESERVED,
        quantity=4,
        picked_quantity=0,
        reserved_at=models.utcnow(),
        allocated_at=None,
        picked_at=None,
    )
    mocker.patch("nursery.allocation.adapters.dao.order_allocations", return_value=[row])

    res = await client.get(f"/orders/{order_id}/allocations", headers=HEADERS)

    assert res.status_code == 200
    [data] = res.json()["data"]
    assert data["tier"] == "product"
    assert data["quantity"] == 4


async def test_allocation_events_without_filter_returns_400(client: AsyncClient) -> None:
    res = await client.get("/allocation-events", headers=HEADERS)

    assert res.status_code == 400
    assert res.json()["error"] == "Must provide allocation_id, order_id, or order_item_id"


async def test_allocation_events_are_read_for_the_callers_organisation(
    client: AsyncClient, mocker: MockerFixture
) -> None:
    allocation_id = uuid4()
    allocation_events = mocker.patch("nursery.allocation.adapters.dao.allocation_events", return_value=[])

    res = await client.get(
        "/allocation-events", params={"allocation_id": str(allocation_id)}, headers=OTHER_ORG_HEADERS
    )

    assert res.status_code == 200
    assert res.json() == {"data": [], "error": None}
    assert allocation_events.call_args.args[0] == OTHER_ORG_ID
    assert allocation_events.call_args.kwargs["allocation_id"] == allocation_id
