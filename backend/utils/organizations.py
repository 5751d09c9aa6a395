from utils.guards import get_live_document


async def get_live_organization(db, organization_id) -> dict:
    return await get_live_document(db.organizations, organization_id, "Organization")


def organization_snapshot(org: dict) -> dict:
    """Read-cache copy embedded on orders, recorded at order time."""
    return {
        "name": org.get("name"),
        "slug": org.get("slug"),
        "logo_url": org.get("logo_url"),
    }


def customer_snapshot(user: dict) -> dict:
    return {
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
    }


def display_name(info: dict | None) -> str:
    info = info or {}
    name = f"{info.get('first_name') or ''} {info.get('last_name') or ''}".strip()
    return name or info.get("email") or "Customer"
