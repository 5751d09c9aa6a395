from datetime import datetime, timedelta

import pytest

from models.order import CancellationReason
from utils.errors import ConflictError, IllegalTransitionError, PermissionDeniedError, ValidationFailedError
from utils.order_service import cancel_order
from utils.payout_periods import period_start_for
from utils.payout_service import generate_payout_invoice
from utils.voucher_service import (
    approve_voucher_refund_request,
    check_monetary_refund_eligibility,
    list_voucher_refund_requests,
    reject_voucher_refund_request,
    submit_voucher_refund_request,
)

NOW = datetime(2024, 3, 1, 12, 0)


def _voucher(**overrides):
    voucher = {
        "discount_type": "REFUND",
        "discount_value": 200.0,
        "used_count": 0,
        "is_active": True,
        "expires_at": NOW + timedelta(days=300),
        "cancellation_initiator": "SELLER",
        "monetary_refund_eligible_at": NOW - timedelta(days=1),
        "created_at": NOW - timedelta(days=15),
    }
    voucher.update(overrides)
    return voucher


@pytest.fixture
def eligible_voucher(db, org, customer, seller, make_order):
    async def _make(discount=200.0):
        order = await make_order(org, customer, total=800.0, discount=discount, status="PROCESSING")
        cancelled = await cancel_order(db, seller, order["_id"], CancellationReason.OUT_OF_STOCK)
        await db.vouchers.update_one(
            {"_id": cancelled["refund_voucher_id"]},
            {"$set": {"monetary_refund_eligible_at": datetime.utcnow() - timedelta(days=1)}},
        )
        return await db.vouchers.find_one({"_id": cancelled["refund_voucher_id"]})
    return _make


class TestEligibility:
    def test_eligible_after_waiting_period(self):
        assert check_monetary_refund_eligibility(_voucher(), NOW) == {
            "eligible": True,
            "reason": None,
            "days_remaining": 0,
        }

    def test_waiting_period_reports_days_remaining(self):
        result = check_monetary_refund_eligibility(
            _voucher(monetary_refund_eligible_at=NOW + timedelta(days=3, hours=2)), NOW
        )
        assert result["eligible"] is False
        assert result["days_remaining"] == 4

    def test_customer_cancellations_stay_store_credit(self):
        result = check_monetary_refund_eligibility(
            _voucher(cancellation_initiator="CUSTOMER", monetary_refund_eligible_at=None), NOW
        )
        assert result["eligible"] is False

    def test_used_voucher(self):
        assert check_monetary_refund_eligibility(_voucher(used_count=1), NOW)["eligible"] is False

    def test_expired_voucher(self):
        assert check_monetary_refund_eligibility(_voucher(expires_at=NOW), NOW)["eligible"] is False

    def test_regular_discount_voucher(self):
        assert check_monetary_refund_eligibility(_voucher(discount_type="FIXED_AMOUNT"), NOW)["eligible"] is False

    def test_missing_eligibility_date_falls_back_to_creation(self):
        voucher = _voucher(monetary_refund_eligible_at=None, created_at=NOW - timedelta(days=13))
        result = check_monetary_refund_eligibility(voucher, NOW)
        assert result["eligible"] is False
        assert result["days_remaining"] == 1


class TestRefundRequests:
    async def test_request_cannot_exceed_voucher_value(self, db, customer, eligible_voucher):
        voucher = await eligible_voucher()
        with pytest.raises(ValidationFailedError):
            await submit_voucher_refund_request(db, customer, voucher["_id"], 250)

    async def test_defaults_to_full_value(self, db, customer, eligible_voucher):
        voucher = await eligible_voucher()
        request = await submit_voucher_refund_request(db, customer, voucher["_id"])

        assert request["status"] == "PENDING"
        assert request["requested_amount"] == 200.0
        stored = await db.vouchers.find_one({"_id": voucher["_id"]})
        assert stored["monetary_refund_requested_at"] is not None

    async def test_one_pending_request_per_voucher(self, db, customer, eligible_voucher):
        voucher = await eligible_voucher()
        await submit_voucher_refund_request(db, customer, voucher["_id"], 100)

        with pytest.raises(ConflictError):
            await submit_voucher_refund_request(db, customer, voucher["_id"], 50)

    async def test_unique_index_rejects_second_pending_request(self, db, customer, eligible_voucher, monkeypatch):
        voucher = await eligible_voucher()
        await submit_voucher_refund_request(db, customer, voucher["_id"], 100)

        async def no_pending(db, voucher_id):
            return None

        monkeypatch.setattr("utils.voucher_service._find_pending_request", no_pending)

        with pytest.raises(ConflictError):
            await submit_voucher_refund_request(db, customer, voucher["_id"], 50)

        pending = await db.voucher_refund_requests.count_documents(
            {"voucher_id": voucher["_id"], "status": "PENDING"}
        )
        assert pending == 1

    async def test_not_eligible_yet(self, db, org, customer, seller, make_order):
        order = await make_order(org, customer, total=800.0, discount=200.0, status="PROCESSING")
        cancelled = await cancel_order(db, seller, order["_id"], CancellationReason.OUT_OF_STOCK)

        with pytest.raises(ValidationFailedError):
            await submit_voucher_refund_request(db, customer, cancelled["refund_voucher_id"])

    async def test_other_customer_cannot_request(self, db, make_user, eligible_voucher):
        voucher = await eligible_voucher()
        someone_else = await make_user()
        with pytest.raises(PermissionDeniedError):
            await submit_voucher_refund_request(db, someone_else, voucher["_id"])

    async def test_used_voucher_is_rejected(self, db, customer, eligible_voucher):
        voucher = await eligible_voucher()
        await db.vouchers.update_one({"_id": voucher["_id"]}, {"$set": {"used_count": 1}})
        with pytest.raises(ValidationFailedError):
            await submit_voucher_refund_request(db, customer, voucher["_id"])

    async def test_customers_only_list_their_own(self, db, customer, make_user, admin, eligible_voucher):
        voucher = await eligible_voucher()
        await submit_voucher_refund_request(db, customer, voucher["_id"])
        someone_else = await make_user()

        assert (await list_voucher_refund_requests(db, customer))["total"] == 1
        assert (await list_voucher_refund_requests(db, someone_else))["total"] == 0
        assert (await list_voucher_refund_requests(db, admin, status="PENDING"))["total"] == 1


class TestReview:
    async def test_approval_schedules_clawback(self, db, org, customer, admin, eligible_voucher):
        voucher = await eligible_voucher()
        request = await submit_voucher_refund_request(db, customer, voucher["_id"])

        approved = await approve_voucher_refund_request(db, admin, request["_id"], "Refund sent to GCash wallet")

        assert approved["status"] == "APPROVED"
        assert approved["reviewed_by"] == admin["_id"]
        adjustment = await db.payout_adjustments.find_one({"_id": approved["adjustment_id"]})
        assert adjustment["type"] == "VOUCHER_REFUND"
        assert adjustment["amount"] == -200.0
        assert adjustment["organization_id"] == org["_id"]
        assert adjustment["status"] == "PENDING"

        stored = await db.vouchers.find_one({"_id": voucher["_id"]})
        assert stored["is_active"] is False

        with pytest.raises(IllegalTransitionError):
            await approve_voucher_refund_request(db, admin, request["_id"], "Refund sent to GCash wallet")
        assert await db.payout_adjustments.count_documents({"type": "VOUCHER_REFUND"}) == 1

    async def test_partial_approval_keeps_remaining_credit(self, db, customer, admin, eligible_voucher):
        voucher = await eligible_voucher()
        request = await submit_voucher_refund_request(db, customer, voucher["_id"], 150)

        approved = await approve_voucher_refund_request(db, admin, request["_id"], "Partial refund sent to GCash")

        adjustment = await db.payout_adjustments.find_one({"_id": approved["adjustment_id"]})
        assert adjustment["amount"] == -150.0

        stored = await db.vouchers.find_one({"_id": voucher["_id"]})
        assert stored["is_active"] is True
        assert stored["discount_value"] == 50.0
        assert stored["monetary_refunded_amount"] == 150.0
        assert stored["monetary_refund_requested_at"] is None

        remainder = await submit_voucher_refund_request(db, customer, voucher["_id"])
        assert remainder["requested_amount"] == 50.0

        await approve_voucher_refund_request(db, admin, remainder["_id"], "Remaining balance refunded")
        stored = await db.vouchers.find_one({"_id": voucher["_id"]})
        assert stored["is_active"] is False
        assert stored["monetary_refunded_amount"] == 200.0

    async def test_next_invoice_deducts_approved_refund(self, db, org, customer, admin, eligible_voucher):
        voucher = await eligible_voucher()
        request = await submit_voucher_refund_request(db, customer, voucher["_id"])
        await approve_voucher_refund_request(db, admin, request["_id"], "Refund sent to GCash wallet")

        start = period_start_for(datetime.utcnow())
        invoice = await generate_payout_invoice(
            db, admin, str(org["_id"]), start, now=datetime.utcnow() + timedelta(days=8)
        )

        assert invoice["total_adjustment_amount"] == -200.0
        assert invoice["net_amount"] == -200.0

    async def test_admin_message_length(self, db, customer, admin, eligible_voucher):
        voucher = await eligible_voucher()
        request = await submit_voucher_refund_request(db, customer, voucher["_id"])

        with pytest.raises(ValidationFailedError):
            await approve_voucher_refund_request(db, admin, request["_id"], "ok")
        with pytest.raises(ValidationFailedError):
            await reject_voucher_refund_request(db, admin, request["_id"], "x" * 1001)

    async def test_rejection_keeps_store_credit(self, db, customer, admin, eligible_voucher):
        voucher = await eligible_voucher()
        request = await submit_voucher_refund_request(db, customer, voucher["_id"])

        rejected = await reject_voucher_refund_request(db, admin, request["_id"], "Voucher still usable in store")

        assert rejected["status"] == "REJECTED"
        assert rejected["admin_message"] == "Voucher still usable in store"
        stored = await db.vouchers.find_one({"_id": voucher["_id"]})
        assert stored["is_active"] is True
        assert stored["monetary_refund_requested_at"] is None
        assert await db.payout_adjustments.count_documents({}) == 0

        with pytest.raises(IllegalTransitionError):
            await approve_voucher_refund_request(db, admin, request["_id"], "Changed my mind after all")

    async def test_sellers_cannot_review(self, db, customer, seller, eligible_voucher):
        voucher = await eligible_voucher()
        request = await submit_voucher_refund_request(db, customer, voucher["_id"])

        with pytest.raises(PermissionDeniedError):
            await approve_voucher_refund_request(db, seller, request["_id"], "Looks fine to me")
