from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from conftest import NOW, PERIOD_END, PERIOD_START
from models.payout import AdjustmentCreate, AdjustmentType, BankDetailsUpdate, PayoutSettingsUpdate
from utils.adjustments import insert_adjustment
from utils.crypto import decrypt_sensitive_value
from utils.errors import ConflictError, IllegalTransitionError, PermissionDeniedError, ValidationFailedError
from utils.payout_periods import period_start_for, previous_period, validate_period
from utils.payout_service import (
    build_order_summary,
    build_product_summary,
    cancel_invoice,
    compute_invoice_totals,
    create_adjustment,
    generate_payout_invoice,
    generate_payout_invoices_for_period,
    get_payout_summary,
    mark_invoice_paid,
    mark_invoice_processing,
    update_org_bank_details,
    update_payout_settings,
    verify_invoice_totals,
)
from workers.payout_generation_worker import run_payout_generation_once


async def _adjustment(db, org, amount, adjustment_type=AdjustmentType.CORRECTION, created_at=None):
    adjustment = await insert_adjustment(
        db,
        organization_id=org["_id"],
        amount=amount,
        adjustment_type=adjustment_type,
        reason="Manual correction",
    )
    created_at = created_at or PERIOD_START + timedelta(days=2)
    await db.payout_adjustments.update_one({"_id": adjustment["_id"]}, {"$set": {"created_at": created_at}})
    return adjustment


async def _generate(db, admin, org, period_start=PERIOD_START):
    return await generate_payout_invoice(db, admin, str(org["_id"]), period_start, now=NOW)


# =====================================================
# PERIODS
# =====================================================

class TestPeriods:
    def test_period_containing_moment_starts_on_wednesday(self):
        assert period_start_for(datetime(2024, 1, 9, 23, 59)) == PERIOD_START
        assert period_start_for(datetime(2024, 1, 3)) == PERIOD_START
        assert period_start_for(datetime(2024, 1, 10)) == PERIOD_END

    def test_previous_period(self):
        assert previous_period(NOW) == (PERIOD_START, PERIOD_END)

    def test_misaligned_start(self):
        with pytest.raises(ValidationFailedError):
            validate_period(datetime(2024, 1, 4), NOW)
        with pytest.raises(ValidationFailedError):
            validate_period(datetime(2024, 1, 3, 12), NOW)

    def test_open_period(self):
        with pytest.raises(ValidationFailedError):
            validate_period(PERIOD_END, NOW)


# =====================================================
# PURE COMPUTATION
# =====================================================

class TestInvoiceTotals:
    def test_fee_and_net(self):
        totals = compute_invoice_totals(
            [{"total_amount": 500.0, "discount_amount": 50.0}, {"total_amount": 300.0}],
            [{"amount": -20.0}, {"amount": 5.5}],
            15,
        )
        assert totals["gross_amount"] == 800.0
        assert totals["total_voucher_discount"] == 50.0
        assert totals["platform_fee_amount"] == 120.0
        assert totals["total_adjustment_amount"] == -14.5
        assert totals["net_amount"] == 665.5

    def test_fee_rounds_half_up_once(self):
        totals = compute_invoice_totals([{"total_amount": 333.33}], [], 15)
        assert totals["platform_fee_amount"] == 50.0
        assert totals["net_amount"] == 283.33

    def test_verify_detects_tampering(self):
        invoice = compute_invoice_totals([{"total_amount": 800.0}], [], 15)
        assert verify_invoice_totals(invoice) is True

        assert verify_invoice_totals({**invoice, "net_amount": 681.0}) is False
        assert verify_invoice_totals({**invoice, "platform_fee_amount": 100.0, "net_amount": 700.0}) is False

    def test_order_summary_is_capped(self):
        orders = [
            {"_id": ObjectId(), "order_number": f"ORD-{i}", "total_amount": 10.0, "customer_info": {"email": "a@b.c"}}
            for i in range(55)
        ]
        summary, more = build_order_summary(orders)
        assert len(summary) == 50
        assert more == 5
        assert summary[0]["customer_name"] == "a@b.c"

    def test_product_summary_groups_and_sorts(self):
        items = [
            {"product_id": "p1", "product_title": "Hoodie", "variant_id": "v1", "variant_name": "Black", "size": "M", "quantity": 1, "price": 100.0},
            {"product_id": "p1", "product_title": "Hoodie", "variant_id": "v1", "variant_name": "Black", "size": "L", "quantity": 3, "price": 100.0},
            {"product_id": "p1", "product_title": "Hoodie", "variant_id": "v2", "variant_name": "White", "size": "M", "quantity": 1, "price": 100.0},
            {"product_id": "p2", "product_title": "Cap", "quantity": 10, "price": 20.0},
        ]
        summary = build_product_summary(items)

        assert [p["product_id"] for p in summary] == ["p2", "p1"]
        hoodie = summary[1]
        assert hoodie["quantity"] == 5
        assert hoodie["amount"] == 500.0
        assert [v["variant_id"] for v in hoodie["variants"]] == ["v1", "v2"]
        assert [s["size"] for s in hoodie["variants"][0]["sizes"]] == ["L", "M"]
        assert hoodie["variants"][0]["sizes"][0]["amount"] == 300.0


# =====================================================
# GENERATION
# =====================================================

class TestGeneratePayoutInvoice:
    async def test_generates_invoice_for_paid_orders(self, db, org, customer, admin, make_order):
        first = await make_order(org, customer, total=500.0, payment_status="PAID")
        second = await make_order(org, customer, total=300.0, payment_status="PAID")

        invoice = await _generate(db, admin, org)

        assert invoice["invoice_number"] == "PI-20240103-ACMESHOP-001"
        assert invoice["gross_amount"] == 800.0
        assert invoice["platform_fee_percentage"] == 15.0
        assert invoice["platform_fee_amount"] == 120.0
        assert invoice["net_amount"] == 680.0
        assert invoice["order_count"] == 2
        assert invoice["status"] == "PENDING"
        assert invoice["period_start"] == PERIOD_START
        assert invoice["period_end"] == PERIOD_END
        assert invoice["organization_info"]["slug"] == "acme-shop"

        for order in (first, second):
            stored = await db.orders.find_one({"_id": order["_id"]})
            assert stored["payout_invoice_id"] == invoice["_id"]

    async def test_second_generation_conflicts(self, db, org, customer, admin, make_order):
        await make_order(org, customer, payment_status="PAID")
        await _generate(db, admin, org)

        with pytest.raises(ConflictError):
            await _generate(db, admin, org)

        assert await db.payout_invoices.count_documents({"organization_id": org["_id"]}) == 1

    async def test_unique_index_rejects_duplicate_invoice(self, db, org, customer, admin, make_order, monkeypatch):
        await make_order(org, customer, payment_status="PAID")
        await _generate(db, admin, org)
        late = await make_order(org, customer, total=200.0, payment_status="PAID")

        async def no_live_invoice(db, organization_id, period_start):
            return None

        monkeypatch.setattr("utils.payout_service._find_live_invoice", no_live_invoice)

        with pytest.raises(ConflictError):
            await _generate(db, admin, org)

        live = await db.payout_invoices.count_documents({"organization_id": org["_id"], "is_cancelled": False})
        assert live == 1
        stored = await db.orders.find_one({"_id": late["_id"]})
        assert stored["payout_invoice_id"] is None

    async def test_only_paid_orders_inside_period_qualify(self, db, org, customer, admin, make_order):
        included = await make_order(org, customer, total=500.0, payment_status="PAID")
        await make_order(org, customer, total=100.0, payment_status="DOWNPAYMENT", amount_collected=50.0)
        await make_order(org, customer, total=100.0, payment_status="PAID", order_date=PERIOD_END)
        await make_order(org, customer, total=100.0, payment_status="PAID", order_date=PERIOD_START - timedelta(seconds=1))
        await make_order(org, customer, total=100.0, payment_status="PAID", is_deleted=True)
        await make_order(org, customer, total=100.0, payment_status="PAID", payout_invoice_id=ObjectId())

        invoice = await _generate(db, admin, org)

        assert invoice["order_count"] == 1
        assert invoice["order_summary"][0]["order_id"] == included["_id"]
        assert invoice["gross_amount"] == 500.0

    async def test_pending_adjustments_are_applied(self, db, org, customer, admin, make_order):
        await make_order(org, customer, total=1000.0, payment_status="PAID")
        refund = await _adjustment(db, org, -200.0, AdjustmentType.REFUND)
        late = await _adjustment(db, org, -50.0, created_at=PERIOD_END + timedelta(hours=1))

        invoice = await _generate(db, admin, org)

        assert invoice["total_adjustment_amount"] == -200.0
        assert invoice["net_amount"] == 650.0
        assert invoice["adjustment_count"] == 1
        assert verify_invoice_totals(invoice)

        applied = await db.payout_adjustments.find_one({"_id": refund["_id"]})
        assert applied["status"] == "APPLIED"
        assert applied["payout_invoice_id"] == invoice["_id"]

        untouched = await db.payout_adjustments.find_one({"_id": late["_id"]})
        assert untouched["status"] == "PENDING"

    async def test_negative_net_is_stored(self, db, org, customer, admin, make_order):
        await make_order(org, customer, total=500.0, payment_status="PAID")
        await _adjustment(db, org, -1000.0, AdjustmentType.VOUCHER_REFUND)

        invoice = await _generate(db, admin, org)

        assert invoice["net_amount"] == -575.0
        assert verify_invoice_totals(invoice)

    async def test_adjustments_alone_produce_an_invoice(self, db, org, admin):
        await _adjustment(db, org, 120.0)
        invoice = await _generate(db, admin, org)
        assert invoice["order_count"] == 0
        assert invoice["net_amount"] == 120.0

    async def test_organization_fee_override(self, db, make_org, customer, admin, make_order):
        org = await make_org(name="Low Fee", slug="low-fee", platform_fee_percentage=10)
        await make_order(org, customer, total=800.0, payment_status="PAID")

        invoice = await _generate(db, admin, org)

        assert invoice["platform_fee_percentage"] == 10.0
        assert invoice["platform_fee_amount"] == 80.0
        assert invoice["invoice_number"] == "PI-20240103-LOWFEE-001"

    async def test_empty_period_is_rejected(self, db, org, admin):
        with pytest.raises(ValidationFailedError):
            await _generate(db, admin, org)

    async def test_open_period_is_rejected(self, db, org, customer, admin, make_order):
        await make_order(org, customer, payment_status="PAID", order_date=PERIOD_END + timedelta(days=1))
        with pytest.raises(ValidationFailedError):
            await _generate(db, admin, org, PERIOD_END)

    async def test_minimum_payout(self, db, org, customer, admin, make_order):
        await update_payout_settings(db, admin, PayoutSettingsUpdate(minimum_payout_amount=1000))
        await make_order(org, customer, total=500.0, payment_status="PAID")

        with pytest.raises(ValidationFailedError):
            await _generate(db, admin, org)

    async def test_sellers_cannot_generate(self, db, org, seller):
        with pytest.raises(PermissionDeniedError):
            await _generate(db, seller, org)

    async def test_invoice_includes_product_summary(self, db, org, customer, admin, make_order):
        await make_order(org, customer, total=500.0, payment_status="PAID")
        await make_order(org, customer, total=500.0, payment_status="PAID")

        invoice = await _generate(db, admin, org)

        assert invoice["product_summary"][0]["product_title"] == "Hoodie"
        assert invoice["product_summary"][0]["quantity"] == 2
        assert invoice["item_count"] == 2


class TestPeriodRun:
    async def test_run_reports_each_organization(self, db, org, make_org, customer, admin, make_order):
        empty = await make_org(name="Quiet", slug="quiet")
        await make_order(org, customer, payment_status="PAID")

        summary = await generate_payout_invoices_for_period(db, now=NOW)

        assert summary["period_start"] == PERIOD_START
        assert [g["organization_id"] for g in summary["generated"]] == [str(org["_id"])]
        assert summary["skipped_empty"] == [str(empty["_id"])]
        assert summary["failed"] == []

        again = await generate_payout_invoices_for_period(db, PERIOD_START, now=NOW)
        assert again["generated"] == []
        assert again["skipped_existing"] == [str(org["_id"])]

    async def test_failure_is_isolated(self, db, org, make_org, customer, make_order, monkeypatch):
        broken = await make_org(name="Broken", slug="broken")
        await make_order(org, customer, payment_status="PAID")
        await make_order(broken, customer, payment_status="PAID")

        async def flaky_items(db, order):
            if order["organization_id"] == broken["_id"]:
                raise RuntimeError("item storage unavailable")
            return list(order.get("embedded_items") or [])

        monkeypatch.setattr("utils.payout_service.load_order_items", flaky_items)

        summary = await generate_payout_invoices_for_period(db, PERIOD_START, now=NOW)

        assert [g["organization_id"] for g in summary["generated"]] == [str(org["_id"])]
        assert summary["failed"] == [{"organization_id": str(broken["_id"]), "error": "item storage unavailable"}]
        assert await db.payout_invoices.count_documents({"organization_id": broken["_id"]}) == 0

        settings = await db.payout_settings.find_one({"_id": "global"})
        assert settings["last_run_status"] == "FAILED"

    async def test_worker_runs_once_per_period(self, db, org, customer, make_order):
        await make_order(org, customer, payment_status="PAID")

        first = await run_payout_generation_once(db, now=NOW)
        assert len(first["generated"]) == 1

        assert await run_payout_generation_once(db, now=NOW + timedelta(hours=1)) is None


# =====================================================
# LIFECYCLE
# =====================================================

class TestInvoiceLifecycle:
    async def test_mark_paid_requires_reference(self, db, org, customer, admin, make_order):
        await make_order(org, customer, payment_status="PAID")
        invoice = await _generate(db, admin, org)

        with pytest.raises(ValidationFailedError):
            await mark_invoice_paid(db, admin, invoice["_id"], "   ")

        paid = await mark_invoice_paid(db, admin, invoice["_id"], "BDO-TRX-8812", "Batch transfer")
        assert paid["status"] == "PAID"
        assert paid["payment_reference"] == "BDO-TRX-8812"
        assert paid["paid_by_info"]["email"] == admin["email"]
        assert [h["status"] for h in paid["status_history"]] == ["PENDING", "PAID"]

    async def test_paid_invoice_cannot_be_cancelled(self, db, org, customer, admin, make_order):
        await make_order(org, customer, payment_status="PAID")
        invoice = await _generate(db, admin, org)
        await mark_invoice_processing(db, admin, invoice["_id"])
        await mark_invoice_paid(db, admin, invoice["_id"], "REF-1")

        with pytest.raises(IllegalTransitionError):
            await cancel_invoice(db, admin, invoice["_id"], "Wrong amount")

    async def test_cancel_releases_orders_and_adjustments(self, db, org, customer, admin, make_order):
        order = await make_order(org, customer, total=500.0, payment_status="PAID")
        adjustment = await _adjustment(db, org, -25.0)
        invoice = await _generate(db, admin, org)

        cancelled = await cancel_invoice(db, admin, invoice["_id"], "Seller disputed totals")

        assert cancelled["status"] == "CANCELLED"
        assert cancelled["is_cancelled"] is True
        assert cancelled["net_amount"] == invoice["net_amount"]
        assert (await db.orders.find_one({"_id": order["_id"]}))["payout_invoice_id"] is None
        released = await db.payout_adjustments.find_one({"_id": adjustment["_id"]})
        assert released["status"] == "PENDING"
        assert released["payout_invoice_id"] is None

    async def test_summary(self, db, org, customer, admin, seller, make_order):
        await make_order(org, customer, total=1000.0, payment_status="PAID")
        invoice = await _generate(db, admin, org)
        await mark_invoice_paid(db, admin, invoice["_id"], "REF-1")

        summary = await get_payout_summary(db, seller, org["_id"])

        assert summary["total_paid"] == 850.0
        assert summary["total_outstanding"] == 0.0
        assert summary["total_platform_fees"] == 150.0
        assert summary["by_status"]["PAID"]["count"] == 1


# =====================================================
# SETTINGS / BANK DETAILS / ADJUSTMENTS
# =====================================================

class TestPayoutConfiguration:
    async def test_settings_validation(self, db, admin):
        with pytest.raises(ValidationFailedError):
            await update_payout_settings(db, admin, PayoutSettingsUpdate(default_platform_fee_percentage=150))
        with pytest.raises(ValidationFailedError):
            await update_payout_settings(db, admin, PayoutSettingsUpdate(payout_day_of_week=7))

        updated = await update_payout_settings(db, admin, PayoutSettingsUpdate(default_platform_fee_percentage=12.5))
        assert updated["default_platform_fee_percentage"] == 12.5

    async def test_settings_require_platform_admin(self, db, seller):
        with pytest.raises(PermissionDeniedError):
            await update_payout_settings(db, seller, PayoutSettingsUpdate(minimum_payout_amount=100))

    async def test_bank_details_are_encrypted_and_masked(self, db, org, seller, monkeypatch):
        monkeypatch.setattr("utils.crypto.BANK_DATA_ENCRYPTION_KEY", "test-bank-key")

        result = await update_org_bank_details(db, seller, org["_id"], BankDetailsUpdate(
            bank_name="BDO",
            account_name="Acme Shop Inc",
            account_number="001234567890",
        ))

        assert result["account_number_masked"] == "****7890"
        assert "account_number_encrypted" not in result

        stored = (await db.organizations.find_one({"_id": org["_id"]}))["bank_details"]
        assert stored["account_number_encrypted"] != "001234567890"
        assert decrypt_sensitive_value(stored["account_number_encrypted"]) == "001234567890"

    async def test_bank_details_require_all_fields(self, db, org, seller, monkeypatch):
        monkeypatch.setattr("utils.crypto.BANK_DATA_ENCRYPTION_KEY", "test-bank-key")

        with pytest.raises(ValidationFailedError):
            await update_org_bank_details(db, seller, org["_id"], BankDetailsUpdate(
                bank_name=" ",
                account_name="Acme Shop Inc",
                account_number="001234567890",
            ))

    async def test_staff_cannot_change_bank_details(self, db, org, staff):
        with pytest.raises(PermissionDeniedError):
            await update_org_bank_details(db, staff, org["_id"], BankDetailsUpdate(
                bank_name="BDO",
                account_name="Acme Shop Inc",
                account_number="001234567890",
            ))

    async def test_manual_adjustment(self, db, org, admin):
        adjustment = await create_adjustment(db, admin, AdjustmentCreate(
            organization_id=str(org["_id"]),
            amount=-45.505,
            reason="Shipping label reimbursement",
        ))
        assert adjustment["amount"] == -45.51
        assert adjustment["status"] == "PENDING"
        assert adjustment["type"] == "CORRECTION"

    async def test_zero_adjustment_is_rejected(self, db, org, admin):
        with pytest.raises(ValidationFailedError):
            await create_adjustment(db, admin, AdjustmentCreate(
                organization_id=str(org["_id"]),
                amount=0.001,
                reason="Rounding noise",
            ))
