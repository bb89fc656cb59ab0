from typing import Any
from unittest import mock
from uuid import uuid4

from pytest_mock import MockerFixture
from redis.exceptions import ConnectionError as RedisConnectionError

from fakes import ACTOR_ID, ORG_ID, OTHER_ORG_ID, FakeUnitOfWork, make_batch, make_order, make_product
from nursery.allocation.adapters import dto
from nursery.allocation.adapters.cache import AtsCache
from nursery.allocation.domain import models
from nursery.allocation.service_layer import actions
from nursery.allocation.service_layer.actions import RequestContext

CTX = RequestContext(actor_id=ACTOR_ID, org_id=ORG_ID)
ANONYMOUS = RequestContext(actor_id=None, org_id=ORG_ID)
OTHER_ORG = RequestContext(actor_id=ACTOR_ID, org_id=OTHER_ORG_ID)


async def test_write_actions_require_an_actor(uow: FakeUnitOfWork) -> None:
    results = [
        await actions.confirm_order_with_allocations(uuid4(), ANONYMOUS, uow),
        await actions.start_picking_order(uuid4(), ANONYMOUS, uow),
        await actions.select_batch_for_allocation(uuid4(), uuid4(), ANONYMOUS, uow),
        await actions.mark_allocation_picked(uuid4(), ANONYMOUS, uow),
        await actions.cancel_allocation(uuid4(), ANONYMOUS, uow),
        await actions.dispatch_order(uuid4(), ANONYMOUS, uow),
        await actions.void_order(uuid4(), ANONYMOUS, uow),
    ]

    assert all(r.success is False and r.error == "Not authenticated" for r in results)


async def test_confirm_returns_oversell_warnings(uow: FakeUnitOfWork, mock_ats_cache: mock.AsyncMock) -> None:
    product = make_product()
    order = make_order((product, 10))
    await uow.products.add(product)
    await uow.batches.add(make_batch(product, 4))
    await uow.orders.add(order)

    result = await actions.confirm_order_with_allocations(order.id, CTX, uow)

    assert result.success is True
    assert result.error is None
    assert result.has_oversell_warning is True
    [item] = result.oversell_items
    assert item.product_id == product.id
    assert item.quantity == 10
    mock_ats_cache.invalidate.assert_awaited_once_with(
        [product.id], ["/sales/orders", f"/sales/orders/{order.id}"]
    )


async def test_business_failure_becomes_error_result(uow: FakeUnitOfWork) -> None:
    product = make_product(allow_oversell=False)
    order = make_order((product, 10))
    await uow.products.add(product)
    await uow.batches.add(make_batch(product, 4))
    await uow.orders.add(order)

    result = await actions.confirm_order_with_allocations(order.id, CTX, uow)

    assert result.success is False
    assert result.error is not None
    assert "Insufficient stock" in result.error
    assert order.status == models.OrderStatus.DRAFT


async def test_order_of_other_organisation(uow: FakeUnitOfWork) -> None:
    order = make_order((make_product(), 1))
    await uow.orders.add(order)

    result = await actions.void_order(order.id, RequestContext(actor_id=ACTOR_ID, org_id=uuid4()), uow)

    assert result == dto.VoidOrderResult(success=False, error="Not authorized to modify this order")


async def test_unexpected_failure_is_logged_and_hidden(uow: FakeUnitOfWork, mocker: MockerFixture) -> None:
    mocker.patch.object(uow.orders, "get", side_effect=RuntimeError("connection reset"))

    result = await actions.start_picking_order(uuid4(), CTX, uow)

    assert result == dto.StartPickingResult(success=False, error="Failed to start picking")


async def test_picking_flow_end_to_end(uow: FakeUnitOfWork) -> None:
    product = make_product()
    batch = make_batch(product, 30)
    order = make_order((product, 12))
    await uow.products.add(product)
    await uow.batches.add(batch)
    await uow.orders.add(order)

    assert (await actions.confirm_order_with_allocations(order.id, CTX, uow)).success
    picking = await actions.start_picking_order(order.id, CTX, uow)
    [pending] = picking.pending_batch_selections
    selected = await actions.select_batch_for_allocation(pending.allocation_id, batch.id, CTX, uow)
    picked = await actions.mark_allocation_picked(pending.allocation_id, CTX, uow, picked_quantity=11)
    dispatched = await actions.dispatch_order(order.id, CTX, uow)

    assert selected.tier == models.AllocationTier.BATCH
    assert selected.status == models.AllocationStatus.ALLOCATED
    assert batch.available_quantity == 18
    assert (picked.picked_quantity, picked.shortage) == (11, 1)
    assert dispatched == dto.DispatchOrderResult(success=True, allocations_shipped=1)


async def test_cancel_is_idempotent(uow: FakeUnitOfWork) -> None:
    product = make_product()
    order = make_order((product, 3))
    await uow.products.add(product)
    await uow.orders.add(order)
    await actions.confirm_order_with_allocations(order.id, CTX, uow)
    [allocation] = order.allocations

    first = await actions.cancel_allocation(allocation.id, CTX, uow, reason="duplicate")
    second = await actions.cancel_allocation(allocation.id, CTX, uow)

    assert first == dto.CancelAllocationResult(success=True, quantity_released=3)
    assert second == dto.CancelAllocationResult(success=True, quantity_released=0)


class TestStockStatus:
    def ats(self, **kwargs: Any) -> models.ProductATS:
        kwargs.setdefault("product_id", uuid4())
        kwargs.setdefault("calculated_ats", 20)
        kwargs.setdefault("override_ats", None)
        kwargs.setdefault("tier1_reserved", 5)
        kwargs.setdefault("low_stock_threshold", 10)
        kwargs.setdefault("allow_oversell", True)
        return models.ProductATS(**kwargs)

    async def test_computes_and_caches(self, mocker: MockerFixture, mock_ats_cache: mock.AsyncMock) -> None:
        ats = self.ats()
        mocker.patch("nursery.allocation.adapters.dao.product_ats", return_value={ats.product_id: ats})

        result = await actions.get_product_stock_status(ats.product_id, CTX, mock.Mock())

        assert result.error is None
        assert result.data.effective_ats == 15
        assert result.data.stock_status == models.StockStatus.IN_STOCK
        mock_ats_cache.set.assert_awaited_once_with(ats.product_id, ORG_ID, result.data.model_dump(mode="json"))

    async def test_served_from_cache(self, mocker: MockerFixture, mock_ats_cache: mock.AsyncMock) -> None:
        ats = self.ats()
        cached = actions._ats_view(ats).model_dump(mode="json")
        mock_ats_cache.get.return_value = cached
        product_ats = mocker.patch("nursery.allocation.adapters.dao.product_ats")

        result = await actions.get_product_stock_status(ats.product_id, CTX, mock.Mock())

        assert result.data == actions._ats_view(ats)
        product_ats.assert_not_called()
        mock_ats_cache.get.assert_awaited_once_with(ats.product_id, ORG_ID)

    async def test_view_cached_for_another_organisation_is_not_served(self, mocker: MockerFixture) -> None:
        # Given: a view cached for ORG_ID
        ats = self.ats()
        client = mock.AsyncMock()
        cache = AtsCache(client, ttl=30)
        await cache.set(ats.product_id, ORG_ID, actions._ats_view(ats).model_dump(mode="json"))
        client.get.return_value = client.set.call_args.args[1]
        mocker.patch("nursery.allocation.service_layer.actions.ats_cache", cache)
        product_ats = mocker.patch("nursery.allocation.adapters.dao.product_ats", return_value={})

        # When: a caller from another org asks for it
        result = await actions.get_product_stock_status(ats.product_id, OTHER_ORG, mock.Mock())

        # Then
        assert result == dto.ProductStockStatusResult(error="Product not found")
        product_ats.assert_awaited_once_with(OTHER_ORG_ID, [ats.product_id], mock.ANY)

    async def test_cache_outage_falls_back_to_database(
        self, mocker: MockerFixture, mock_ats_cache: mock.AsyncMock
    ) -> None:
        ats = self.ats()
        mock_ats_cache.get.side_effect = RedisConnectionError("redis down")
        mock_ats_cache.set.side_effect = RedisConnectionError("redis down")
        mocker.patch("nursery.allocation.adapters.dao.product_ats", return_value={ats.product_id: ats})

        result = await actions.get_product_stock_status(ats.product_id, CTX, mock.Mock())

        assert result.data.effective_ats == 15

    async def test_unknown_product(self, mocker: MockerFixture) -> None:
        mocker.patch("nursery.allocation.adapters.dao.product_ats", return_value={})

        result = await actions.get_product_stock_status(uuid4(), CTX, mock.Mock())

        assert result == dto.ProductStockStatusResult(error="Product not found")

    async def test_database_failure(self, mocker: MockerFixture) -> None:
        mocker.patch("nursery.allocation.adapters.dao.product_ats", side_effect=RuntimeError("boom"))

        result = await actions.get_product_stock_status(uuid4(), CTX, mock.Mock())

        assert result == dto.ProductStockStatusResult(error="Failed to fetch product stock status")

    async def test_bulk_lookup(self, mocker: MockerFixture) -> None:
        a, b = self.ats(), self.ats(calculated_ats=0, tier1_reserved=0)
        mocker.patch("nursery.allocation.adapters.dao.product_ats", return_value={a.product_id: a, b.product_id: b})

        result = await actions.get_products_stock_status([a.product_id, b.product_id], CTX, mock.Mock())

        assert result.data[b.product_id].stock_status == models.StockStatus.OUT_OF_STOCK
        assert result.data[a.product_id].effective_ats == 15

    async def test_bulk_lookup_of_nothing(self, mocker: MockerFixture) -> None:
        product_ats = mocker.patch("nursery.allocation.adapters.dao.product_ats")

        result = await actions.get_products_stock_status([], CTX, mock.Mock())

        assert result == dto.ProductsStockStatusResult(data={})
        product_ats.assert_not_called()


async def test_allocation_events_require_a_filter() -> None:
    result = await actions.get_allocation_events(CTX, mock.Mock())

    assert result == dto.AllocationEventsResult(error="Must provide allocation_id, order_id, or order_item_id")


async def test_allocation_events_are_scoped_to_the_callers_organisation(mocker: MockerFixture) -> None:
    allocation_events = mocker.patch("nursery.allocation.adapters.dao.allocation_events", return_value=[])
    session = mock.Mock()
    allocation_id = uuid4()

    result = await actions.get_allocation_events(OTHER_ORG, session, allocation_id=allocation_id)

    assert result == dto.AllocationEventsResult(data=[])
    allocation_events.assert_awaited_once_with(
        OTHER_ORG_ID, session, allocation_id=allocation_id, order_id=None, order_item_id=None
    )


async def test_available_batches_failure(mocker: MockerFixture) -> None:
    mocker.patch("nursery.allocation.adapters.dao.allocation_candidates", side_effect=RuntimeError("boom"))

    result = await actions.get_available_batches(uuid4(), CTX, mock.Mock())

    assert result == dto.BatchCandidatesResult(error="Failed to fetch available batches")
