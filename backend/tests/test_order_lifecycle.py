"""
Tests for the order/stock state machine — creation, cancellation, deletion,
archiving and payment flags.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.orm.attributes import set_committed_value

from core.errors import InvalidTransitionError, NotFoundError, ValidationError
from db.models import Client, Coral, NotificationJob, Order, OrderItem, OrderStatus
from orders import service
from orders.service import OrderLine, check_transition, discounted_price


async def _quantity(db, coral_id: int) -> int:
    result = await db.execute(select(Coral.quantity).where(Coral.coral_id == coral_id))
    return result.scalar_one()


async def _queued_kinds(db) -> list[str]:
    result = await db.execute(select(NotificationJob.kind).order_by(NotificationJob.created_at))
    return list(result.scalars().all())


async def _reload_client(db, client_id: int) -> Client:
    return await db.get(Client, client_id, populate_existing=True)


async def _place_standard_order(db, seeded_db) -> Order:
    """Two Acropora and one Montipora for the 10% discount client."""
    return await service.create_order(
        db,
        seeded_db["client"],
        [
            OrderLine(coral_id=seeded_db["acropora"].coral_id, quantity=2),
            OrderLine(coral_id=seeded_db["montipora"].coral_id, quantity=1),
        ],
        notes="Pickup after 5pm",
    )


async def _complete(db, order: Order) -> Order:
    for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED):
        order = await service.update_order_status(db, order, status)
    return order


class TestPricing:
    def test_discount_rounds_half_up(self):
        assert discounted_price(Decimal("19.99"), Decimal("10")) == Decimal("17.99")

    def test_half_cent_rounds_up(self):
        assert discounted_price(Decimal("0.05"), Decimal("10")) == Decimal("0.05")
        assert discounted_price(Decimal("12.35"), Decimal("50")) == Decimal("6.18")

    def test_no_discount_keeps_price(self):
        assert discounted_price(Decimal("50.00"), 0) == Decimal("50.00")
        assert discounted_price(Decimal("50.00"), None) == Decimal("50.00")


class TestTransitions:
    def _order(self, status: OrderStatus, archived: bool = False) -> Order:
        return Order(status=status.value, archived=archived, total_amount=Decimal("0"))

    def test_forward_moves_allowed(self):
        check_transition(self._order(OrderStatus.PENDING), OrderStatus.CONFIRMED)
        check_transition(self._order(OrderStatus.CONFIRMED), OrderStatus.READY_FOR_PICKUP)

    def test_backward_correction_allowed(self):
        check_transition(self._order(OrderStatus.READY_FOR_PICKUP), OrderStatus.PROCESSING)
        check_transition(self._order(OrderStatus.COMPLETED), OrderStatus.PENDING)

    def test_same_status_allowed(self):
        check_transition(self._order(OrderStatus.CONFIRMED), OrderStatus.CONFIRMED)

    def test_cancel_only_from_pending_or_confirmed(self):
        check_transition(self._order(OrderStatus.CONFIRMED), OrderStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError, match="cannot be cancelled"):
            check_transition(self._order(OrderStatus.PROCESSING), OrderStatus.CANCELLED)

    def test_cancelled_is_terminal(self):
        with pytest.raises(InvalidTransitionError, match="Only deletion is allowed"):
            check_transition(self._order(OrderStatus.CANCELLED), OrderStatus.PENDING)

    def test_archived_rejects_everything(self):
        with pytest.raises(InvalidTransitionError, match="archived"):
            check_transition(self._order(OrderStatus.COMPLETED, archived=True), OrderStatus.COMPLETED)


@pytest.mark.asyncio
class TestCreateOrder:

    async def test_create_decrements_stock_and_applies_discount(self, test_db, seeded_db):
        """Discounted unit prices, stock decremented, confirmation and low-stock queued."""
        acropora_id = seeded_db["acropora"].coral_id
        montipora_id = seeded_db["montipora"].coral_id

        order = await _place_standard_order(test_db, seeded_db)

        assert order.status == OrderStatus.PENDING.value
        assert order.total_amount == Decimal("107.99")
        prices = {item.coral_id: item.price_at_order for item in order.items}
        assert prices[acropora_id] == Decimal("45.00")
        assert prices[montipora_id] == Decimal("17.99")
        assert await _quantity(test_db, acropora_id) == 8
        assert await _quantity(test_db, montipora_id) == 2

        montipora = await test_db.get(Coral, montipora_id, populate_existing=True)
        assert montipora.status == "low_stock"
        assert await _queued_kinds(test_db) == ["order_confirmation", "low_stock"]

    async def test_insufficient_stock_rolls_back(self, test_db, seeded_db):
        """A failing line leaves every coral untouched."""
        acropora_id = seeded_db["acropora"].coral_id
        montipora_id = seeded_db["montipora"].coral_id

        with pytest.raises(ValidationError, match="Insufficient stock for Montipora Cap"):
            await service.create_order(
                test_db,
                seeded_db["client"],
                [OrderLine(coral_id=acropora_id, quantity=1), OrderLine(coral_id=montipora_id, quantity=4)],
            )

        assert await _quantity(test_db, acropora_id) == 10
        assert await _quantity(test_db, montipora_id) == 3
        result = await test_db.execute(select(Order))
        assert result.scalars().all() == []

    async def test_tampered_price_rejected(self, test_db, seeded_db):
        acropora_id = seeded_db["acropora"].coral_id
        with pytest.raises(ValidationError, match="Invalid price submitted for Acropora Millepora"):
            await service.create_order(
                test_db,
                seeded_db["client"],
                [OrderLine(coral_id=acropora_id, quantity=1, expected_price=Decimal("40.00"))],
            )
        assert await _quantity(test_db, acropora_id) == 10

    async def test_price_within_one_cent_accepted(self, test_db, seeded_db):
        order = await service.create_order(
            test_db,
            seeded_db["client"],
            [OrderLine(coral_id=seeded_db["montipora"].coral_id, quantity=1, expected_price=Decimal("18.00"))],
        )
        assert order.items[0].price_at_order == Decimal("17.99")

    async def test_empty_order_rejected(self, test_db, seeded_db):
        with pytest.raises(ValidationError, match="at least one item"):
            await service.create_order(test_db, seeded_db["client"], [])

    async def test_duplicate_coral_rejected(self, test_db, seeded_db):
        coral_id = seeded_db["acropora"].coral_id
        with pytest.raises(ValidationError):
            await service.create_order(
                test_db,
                seeded_db["client"],
                [OrderLine(coral_id=coral_id, quantity=1), OrderLine(coral_id=coral_id, quantity=1)],
            )

    async def test_unknown_coral_not_found(self, test_db, seeded_db):
        with pytest.raises(NotFoundError):
            await service.create_order(test_db, seeded_db["client"], [OrderLine(coral_id=9999, quantity=1)])


@pytest.mark.asyncio
class TestCancelAndDelete:

    async def test_cancel_then_delete_restores_once(self, test_db, seeded_db):
        """Cancel restores stock; deleting the cancelled order does not restore it again."""
        acropora_id = seeded_db["acropora"].coral_id
        montipora_id = seeded_db["montipora"].coral_id
        order = await _place_standard_order(test_db, seeded_db)

        order = await service.cancel_order(test_db, order)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.stock_restored is True
        assert await _quantity(test_db, acropora_id) == 10
        assert await _quantity(test_db, montipora_id) == 3

        await service.delete_order(test_db, order)
        assert await _quantity(test_db, acropora_id) == 10
        assert await _quantity(test_db, montipora_id) == 3
        items = await test_db.execute(select(OrderItem))
        assert items.scalars().all() == []

    async def test_second_session_cancel_restores_nothing(self, test_db, seeded_db, session_factory):
        """Two sessions holding the same pending order: only the first cancel returns stock."""
        acropora_id = seeded_db["acropora"].coral_id
        order = await service.create_order(
            test_db, seeded_db["client"], [OrderLine(coral_id=acropora_id, quantity=2)]
        )
        order_id = order.order_id
        assert await _quantity(test_db, acropora_id) == 8

        async with session_factory() as first, session_factory() as second:
            first_order = await service.get_order(first, order_id)
            second_order = await service.get_order(second, order_id)

            await service.cancel_order(first, first_order)
            with pytest.raises(InvalidTransitionError, match="Only deletion is allowed"):
                await service.cancel_order(second, second_order)

        assert await _quantity(test_db, acropora_id) == 10

    async def test_stale_delete_after_cancel_restores_once(self, test_db, seeded_db, session_factory):
        """A delete holding a stale cancelled order sees stock_restored and skips the restore."""
        acropora_id = seeded_db["acropora"].coral_id
        order = await service.create_order(
            test_db, seeded_db["client"], [OrderLine(coral_id=acropora_id, quantity=3)]
        )
        order_id = order.order_id

        async with session_factory() as first, session_factory() as second:
            second_order = await service.get_order(second, order_id)
            await service.cancel_order(first, await service.get_order(first, order_id))

            set_committed_value(second_order, "status", OrderStatus.CANCELLED.value)
            set_committed_value(second_order, "stock_restored", False)
            await service.delete_order(second, second_order)

        assert await _quantity(test_db, acropora_id) == 10
        result = await test_db.execute(select(Order).where(Order.order_id == order_id))
        assert result.scalar_one_or_none() is None

    async def test_threshold_order_queues_low_stock_and_cancel_restores(self, test_db, seeded_db):
        """Two units from 5 with minimum 3 hits the threshold; cancel returns to 5."""
        coral = Coral(
            category_id=seeded_db["category"].category_id,
            species_name="Duncan",
            scientific_name="Duncanopsammia axifuga",
            quantity=5,
            minimum_stock=3,
            price=Decimal("30.00"),
            status="available",
        )
        test_db.add(coral)
        await test_db.commit()
        coral_id = coral.coral_id

        order = await service.create_order(test_db, seeded_db["client"], [OrderLine(coral_id=coral_id, quantity=2)])
        assert await _quantity(test_db, coral_id) == 3
        assert "low_stock" in await _queued_kinds(test_db)

        order = await service.cancel_order(test_db, order)
        assert await _quantity(test_db, coral_id) == 5
        assert order.stock_restored is True
        await service.delete_order(test_db, order)
        assert await _quantity(test_db, coral_id) == 5

    async def test_status_update_to_cancelled_restores_stock(self, test_db, seeded_db):
        acropora_id = seeded_db["acropora"].coral_id
        order = await _place_standard_order(test_db, seeded_db)
        order = await service.update_order_status(test_db, order, OrderStatus.CONFIRMED)
        order = await service.update_order_status(test_db, order, OrderStatus.CANCELLED)
        assert order.status == OrderStatus.CANCELLED.value
        assert await _quantity(test_db, acropora_id) == 10

    async def test_cancelled_order_rejects_status_changes(self, test_db, seeded_db):
        order = await _place_standard_order(test_db, seeded_db)
        order = await service.cancel_order(test_db, order)
        with pytest.raises(InvalidTransitionError):
            await service.update_order_status(test_db, order, OrderStatus.CONFIRMED)
        with pytest.raises(InvalidTransitionError):
            await service.cancel_order(test_db, order)

    async def test_cannot_cancel_processing_order(self, test_db, seeded_db):
        order = await _place_standard_order(test_db, seeded_db)
        order = await service.update_order_status(test_db, order, OrderStatus.PROCESSING)
        with pytest.raises(InvalidTransitionError):
            await service.cancel_order(test_db, order)

    async def test_pending_order_cannot_be_deleted(self, test_db, seeded_db):
        order = await _place_standard_order(test_db, seeded_db)
        with pytest.raises(InvalidTransitionError, match="Only cancelled or completed"):
            await service.delete_order(test_db, order)

    async def test_deleting_completed_order_keeps_stock_deducted(self, test_db, seeded_db):
        acropora_id = seeded_db["acropora"].coral_id
        order = await _complete(test_db, await _place_standard_order(test_db, seeded_db))
        await service.delete_order(test_db, order)
        assert await _quantity(test_db, acropora_id) == 8

    async def test_status_changes_queue_updates(self, test_db, seeded_db):
        order = await _place_standard_order(test_db, seeded_db)
        await service.update_order_status(test_db, order, OrderStatus.CONFIRMED)
        kinds = await _queued_kinds(test_db)
        assert kinds.count("status_update") == 1


@pytest.mark.asyncio
class TestArchive:

    async def test_archive_freezes_snapshots(self, test_db, seeded_db):
        """Archived orders drop live relations and keep client/item snapshots."""
        client_id = seeded_db["client"].client_id
        order = await _complete(test_db, await _place_standard_order(test_db, seeded_db))
        order = await service.mark_paid(test_db, order)

        await service.archive_order(test_db, order)
        order = await service.get_order(test_db, order.order_id)

        assert order.archived is True
        assert order.client_id is None
        assert order.items == []
        assert order.archived_client_data["client_id"] == client_id
        assert order.archived_client_data["email"] == "marina@example.com"
        assert {item["species_name"] for item in order.archived_items_data} == {
            "Acropora Millepora",
            "Montipora Cap",
        }

        view = service.order_view(order)
        assert view["client"]["name"] == "Marina Reef"
        assert len(view["items"]) == 2
        assert view["total_amount"] == pytest.approx(107.99)

        client = await _reload_client(test_db, client_id)
        assert service.client_owns_order(order, client)

    async def test_archive_requires_completed_and_paid(self, test_db, seeded_db):
        order = await _place_standard_order(test_db, seeded_db)
        with pytest.raises(InvalidTransitionError, match="Only completed orders"):
            await service.archive_order(test_db, order)

        order = await _complete(test_db, order)
        with pytest.raises(InvalidTransitionError, match="unpaid"):
            await service.archive_order(test_db, order)

    async def test_archived_order_is_read_only(self, test_db, seeded_db):
        order = await _complete(test_db, await _place_standard_order(test_db, seeded_db))
        order = await service.mark_paid(test_db, order)
        await service.archive_order(test_db, order)
        order = await service.get_order(test_db, order.order_id)

        with pytest.raises(InvalidTransitionError, match="archived"):
            await service.update_order_status(test_db, order, OrderStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError, match="already archived"):
            await service.archive_order(test_db, order)
        with pytest.raises(InvalidTransitionError, match="payment status"):
            await service.mark_unpaid(test_db, order)

    async def test_purge_archived(self, test_db, seeded_db):
        order = await _complete(test_db, await _place_standard_order(test_db, seeded_db))
        order = await service.mark_paid(test_db, order)
        await service.archive_order(test_db, order)

        assert await service.purge_archived(test_db) == 1
        assert await service.list_orders(test_db) == []


@pytest.mark.asyncio
class TestPayment:

    async def test_mark_paid_and_unpaid(self, test_db, seeded_db):
        order = await _place_standard_order(test_db, seeded_db)
        order = await service.mark_paid(test_db, order)
        assert order.paid is True
        order = await service.mark_unpaid(test_db, order)
        assert order.paid is False

    async def test_cancelled_order_cannot_be_marked_paid(self, test_db, seeded_db):
        order = await service.cancel_order(test_db, await _place_standard_order(test_db, seeded_db))
        with pytest.raises(InvalidTransitionError):
            await service.mark_paid(test_db, order)
