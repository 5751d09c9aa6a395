from datetime import datetime

import pytest

from models.batch import BatchCreate, BatchUpdate
from utils.batch_service import (
    assign_batches_for_order,
    assign_orders_to_batch,
    create_batch,
    delete_batch,
    list_batches,
    remove_orders_from_batch,
    update_batch,
)
from utils.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationFailedError


def _batch(org, name="January drop", start=datetime(2024, 1, 1), end=datetime(2024, 2, 1), **extra):
    return BatchCreate(organization_id=str(org["_id"]), name=name, start_date=start, end_date=end, **extra)


class TestCreateBatch:
    async def test_stamps_orders_inside_range(self, db, org, customer, seller, make_order):
        inside = await make_order(org, customer, order_date=datetime(2024, 1, 10), total=300.0)
        edge = await make_order(org, customer, order_date=datetime(2024, 1, 1), total=200.0)
        outside = await make_order(org, customer, order_date=datetime(2024, 2, 1))

        batch = await create_batch(db, seller, _batch(org))

        for order in (inside, edge):
            stored = await db.orders.find_one({"_id": order["_id"]})
            assert stored["batch_ids"] == [batch["_id"]]
            assert stored["batch_info"][0]["name"] == "January drop"

        stored = await db.orders.find_one({"_id": outside["_id"]})
        assert stored["batch_ids"] == []

        assert batch["stats"]["total_orders"] == 2
        assert batch["stats"]["total_amount"] == 500.0

    async def test_stats_exclude_cancelled_amounts(self, db, org, customer, seller, make_order):
        await make_order(org, customer, order_date=datetime(2024, 1, 10), total=300.0)
        await make_order(org, customer, order_date=datetime(2024, 1, 11), total=700.0, status="CANCELLED")

        batch = await create_batch(db, seller, _batch(org))

        assert batch["stats"]["total_orders"] == 2
        assert batch["stats"]["by_status"] == {"PENDING": 1, "CANCELLED": 1}
        assert batch["stats"]["total_amount"] == 300.0

    async def test_inactive_batch_does_not_stamp(self, db, org, customer, seller, make_order):
        order = await make_order(org, customer, order_date=datetime(2024, 1, 10))
        await create_batch(db, seller, _batch(org, is_active=False))

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["batch_ids"] == []

    async def test_start_must_precede_end(self, db, org, seller):
        with pytest.raises(ValidationFailedError):
            await create_batch(db, seller, _batch(org, start=datetime(2024, 2, 1), end=datetime(2024, 2, 1)))

    async def test_range_is_bounded(self, db, org, seller):
        with pytest.raises(ValidationFailedError):
            await create_batch(db, seller, _batch(org, start=datetime(2023, 1, 1), end=datetime(2024, 6, 1)))

    async def test_duplicate_name_conflicts(self, db, org, seller):
        await create_batch(db, seller, _batch(org))
        with pytest.raises(ConflictError):
            await create_batch(db, seller, _batch(org))

    async def test_customer_cannot_create(self, db, org, customer):
        with pytest.raises(PermissionDeniedError):
            await create_batch(db, customer, _batch(org))


class TestUpdateBatch:
    async def test_rename_relabels_orders(self, db, org, customer, seller, make_order):
        order = await make_order(org, customer, order_date=datetime(2024, 1, 10))
        batch = await create_batch(db, seller, _batch(org))

        updated = await update_batch(db, seller, batch["_id"], BatchUpdate(name="New year drop"))

        assert updated["name"] == "New year drop"
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["batch_info"] == [{"batch_id": batch["_id"], "name": "New year drop"}]

    async def test_narrowing_range_detaches_orders(self, db, org, customer, seller, make_order):
        early = await make_order(org, customer, order_date=datetime(2024, 1, 5))
        late = await make_order(org, customer, order_date=datetime(2024, 1, 25))
        batch = await create_batch(db, seller, _batch(org))

        updated = await update_batch(db, seller, batch["_id"], BatchUpdate(end_date=datetime(2024, 1, 15)))

        assert (await db.orders.find_one({"_id": early["_id"]}))["batch_ids"] == [batch["_id"]]
        stored_late = await db.orders.find_one({"_id": late["_id"]})
        assert stored_late["batch_ids"] == []
        assert stored_late["batch_info"] == []
        assert updated["stats"]["total_orders"] == 1

    async def test_widening_range_attaches_orders(self, db, org, customer, seller, make_order):
        batch = await create_batch(db, seller, _batch(org, end=datetime(2024, 1, 15)))
        late = await make_order(org, customer, order_date=datetime(2024, 1, 25))

        await update_batch(db, seller, batch["_id"], BatchUpdate(end_date=datetime(2024, 2, 1)))

        assert (await db.orders.find_one({"_id": late["_id"]}))["batch_ids"] == [batch["_id"]]

    async def test_update_rejects_inverted_range(self, db, org, seller):
        batch = await create_batch(db, seller, _batch(org))
        with pytest.raises(ValidationFailedError):
            await update_batch(db, seller, batch["_id"], BatchUpdate(start_date=datetime(2024, 3, 1)))

    async def test_empty_update(self, db, org, seller):
        batch = await create_batch(db, seller, _batch(org))
        with pytest.raises(ValidationFailedError):
            await update_batch(db, seller, batch["_id"], BatchUpdate())


class TestDeleteAndManualAssignment:
    async def test_soft_delete_keeps_order_labels(self, db, org, customer, seller, make_order):
        order = await make_order(org, customer, order_date=datetime(2024, 1, 10))
        batch = await create_batch(db, seller, _batch(org))

        await delete_batch(db, seller, batch["_id"])

        stored = await db.order_batches.find_one({"_id": batch["_id"]})
        assert stored["is_deleted"] is True
        assert (await db.orders.find_one({"_id": order["_id"]}))["batch_ids"] == [batch["_id"]]
        assert await list_batches(db, seller, org["_id"]) == []

        with pytest.raises(NotFoundError):
            await update_batch(db, seller, batch["_id"], BatchUpdate(name="Gone"))

    async def test_new_orders_skip_deleted_batches(self, db, org, seller):
        batch = await create_batch(db, seller, _batch(org))
        await delete_batch(db, seller, batch["_id"])

        ids, labels = await assign_batches_for_order(db, org["_id"], datetime(2024, 1, 10))
        assert ids == []
        assert labels == []

    async def test_manual_assign_and_remove(self, db, org, customer, seller, make_order):
        batch = await create_batch(db, seller, _batch(org, start=datetime(2024, 3, 1), end=datetime(2024, 4, 1)))
        order = await make_order(org, customer, order_date=datetime(2024, 1, 10), total=250.0)

        result = await assign_orders_to_batch(db, seller, batch["_id"], [str(order["_id"])])
        assert result["assigned"] == 1
        assert result["stats"]["total_amount"] == 250.0

        again = await assign_orders_to_batch(db, seller, batch["_id"], [str(order["_id"])])
        assert again["assigned"] == 0

        removed = await remove_orders_from_batch(db, seller, batch["_id"], [str(order["_id"])])
        assert removed["removed"] == 1
        assert removed["stats"]["total_orders"] == 0
        assert (await db.orders.find_one({"_id": order["_id"]}))["batch_info"] == []

    async def test_assigning_foreign_order_is_not_found(self, db, org, customer, seller, make_org, make_order):
        other = await make_org(name="Other", slug="other")
        foreign = await make_order(other, customer)
        batch = await create_batch(db, seller, _batch(org))

        with pytest.raises(NotFoundError):
            await assign_orders_to_batch(db, seller, batch["_id"], [str(foreign["_id"])])
