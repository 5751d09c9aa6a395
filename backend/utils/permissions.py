from bson import ObjectId

from utils.errors import PermissionDeniedError

# =====================================================
# CAPABILITIES
# =====================================================

MANAGE_ORDERS = "MANAGE_ORDERS"
MANAGE_PAYMENTS = "MANAGE_PAYMENTS"
MANAGE_BATCHES = "MANAGE_BATCHES"
VIEW_PAYOUTS = "VIEW_PAYOUTS"
MANAGE_BANK_DETAILS = "MANAGE_BANK_DETAILS"
VIEW_ANALYTICS = "VIEW_ANALYTICS"

# Platform-only (super admin)
VERIFY_PAYMENTS = "VERIFY_PAYMENTS"
GENERATE_PAYOUTS = "GENERATE_PAYOUTS"
MANAGE_PAYOUTS = "MANAGE_PAYOUTS"
REVIEW_VOUCHER_REFUNDS = "REVIEW_VOUCHER_REFUNDS"
MANAGE_ADJUSTMENTS = "MANAGE_ADJUSTMENTS"
MANAGE_PAYOUT_SETTINGS = "MANAGE_PAYOUT_SETTINGS"
VIEW_AUDIT_LOGS = "VIEW_AUDIT_LOGS"

MEMBER_ROLE_CAPABILITIES = {
    "ADMIN": {
        MANAGE_ORDERS,
        MANAGE_PAYMENTS,
        MANAGE_BATCHES,
        VIEW_PAYOUTS,
        MANAGE_BANK_DETAILS,
        VIEW_ANALYTICS,
    },
    "STAFF": {
        MANAGE_ORDERS,
        MANAGE_PAYMENTS,
        MANAGE_BATCHES,
        VIEW_ANALYTICS,
    },
    "MEMBER": set(),
}


def is_platform_admin(user: dict | None) -> bool:
    return bool(user) and user.get("role") == "admin"


async def get_membership(db, user: dict, organization_id) -> dict | None:
    if not organization_id:
        return None
    return await db.organization_members.find_one({
        "organization_id": ObjectId(organization_id),
        "user_id": user["_id"],
        "is_active": True,
    })


async def has_capability(db, user: dict | None, capability: str, organization_id=None) -> bool:
    if not user:
        return False
    if is_platform_admin(user):
        return True

    membership = await get_membership(db, user, organization_id)
    if not membership:
        return False

    return capability in MEMBER_ROLE_CAPABILITIES.get(membership.get("role"), set())


async def require_capability(db, user: dict | None, capability: str, organization_id=None):
    """
    Single authorization gate invoked at the top of every mutation.
    """
    if not await has_capability(db, user, capability, organization_id):
        raise PermissionDeniedError(f"Permission denied: {capability} required")
