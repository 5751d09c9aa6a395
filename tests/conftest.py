from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from utils.indexes import ensure_indexes

# Wednesday 2024-01-03 00:00 UTC, closed by NOW
PERIOD_START = datetime(2024, 1, 3)
PERIOD_END = PERIOD_START + timedelta(days=7)
NOW = datetime(2024, 1, 12, 9, 30)


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["storefront_ledger_test"]
    await ensure_indexes(database)
    yield database


# =====================================================
# FACTORIES
# =====================================================

@pytest.fixture
def make_user(db):
    async def _make(role="customer", **extra):
        user = {
            "first_name": "Juan",
            "last_name": "Dela Cruz",
            "email": f"{ObjectId()}@example.com",
            "phone": None,
            "role": role,
            "is_deleted": False,
            "created_at": datetime.utcnow(),
            **extra,
        }
        await db.users.insert_one(user)
        return user
    return _make


@pytest.fixture
def make_org(db):
    async def _make(name="Acme Shop", slug="acme-shop", **extra):
        org = {
            "name": name,
            "slug": slug,
            "logo_url": None,
            "is_active": True,
            "is_deleted": False,
            "created_at": datetime.utcnow(),
            **extra,
        }
        await db.organizations.insert_one(org)
        return org
    return _make


@pytest.fixture
def add_member(db):
    async def _add(org, user, role="ADMIN"):
        await db.organization_members.insert_one({
            "organization_id": org["_id"],
            "user_id": user["_id"],
            "role": role,
            "is_active": True,
        })
    return _add


@pytest.fixture
def make_order(db):
    async def _make(
        org,
        customer,
        total=500.0,
        discount=0.0,
        status="PENDING",
        payment_status="PENDING",
        order_date=None,
        amount_collected=None,
        items=None,
        **extra,
    ):
        if items is None:
            items = [{
                "position": 0,
                "product_id": "prod-1",
                "product_title": "Hoodie",
                "variant_id": "var-black",
                "variant_name": "Black",
                "size": "M",
                "quantity": 1,
                "price": total + discount,
            }]
        if amount_collected is None:
            amount_collected = total if payment_status == "PAID" else 0.0
        now = datetime.utcnow()
        order = {
            "organization_id": org["_id"],
            "customer_id": customer["_id"],
            "order_number": f"ORD-{ObjectId()}",
            "organization_info": {"name": org["name"], "slug": org["slug"]},
            "customer_info": {
                "first_name": customer.get("first_name"),
                "last_name": customer.get("last_name"),
                "email": customer.get("email"),
            },
            "embedded_items": items,
            "items_ref": False,
            "subtotal_amount": total + discount,
            "discount_amount": discount,
            "total_amount": total,
            "currency": "PHP",
            "item_count": sum(i["quantity"] for i in items),
            "status": status,
            "payment_status": payment_status,
            "amount_collected": amount_collected,
            "paid_at": now if payment_status == "PAID" else None,
            "order_date": order_date or PERIOD_START + timedelta(days=1),
            "batch_ids": [],
            "batch_info": [],
            "survey_response_id": None,
            "payout_invoice_id": None,
            "refund_voucher_id": None,
            "recent_status_history": [],
            "is_deleted": False,
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        await db.orders.insert_one(order)
        return order
    return _make


@pytest.fixture
async def admin(make_user):
    return await make_user(role="admin", first_name="Ada", last_name="Admin")


@pytest.fixture
async def customer(make_user):
    return await make_user()


@pytest.fixture
async def org(make_org):
    return await make_org()


@pytest.fixture
async def seller(make_user, add_member, org):
    user = await make_user(role="seller", first_name="Sam", last_name="Seller")
    await add_member(org, user, "ADMIN")
    return user


@pytest.fixture
async def staff(make_user, add_member, org):
    user = await make_user(role="seller", first_name="Stef", last_name="Staff")
    await add_member(org, user, "STAFF")
    return user
