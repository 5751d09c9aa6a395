from datetime import datetime

LOG_TYPES = {
    "USER_ACTION",
    "SYSTEM_EVENT",
    "SECURITY_EVENT",
    "DATA_CHANGE",
    "ERROR_EVENT",
    "AUDIT_TRAIL",
}
SEVERITIES = {"LOW", "MEDIUM", "HIGH", "CRITICAL"}


async def log_audit(
    db,
    actor_id: str | None,
    actor_role: str,
    action: str,
    metadata: dict | None = None,
    *,
    organization_id=None,
    log_type: str = "DATA_CHANGE",
    severity: str = "LOW",
    resource_type: str | None = None,
    resource_id=None,
    previous_value=None,
    new_value=None,
):
    """
    Append-only action trail. Nothing in the core updates or deletes these.
    """
    if log_type not in LOG_TYPES:
        raise ValueError(f"Unknown audit log type: {log_type}")
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown audit severity: {severity}")

    await db.audit_logs.insert_one({
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "action": action,
        "organization_id": organization_id,
        "log_type": log_type,
        "severity": severity,
        "resource_type": resource_type,
        "resource_id": str(resource_id) if resource_id else None,
        "previous_value": previous_value,
        "new_value": new_value,
        "metadata": metadata or {},
        "created_at": datetime.utcnow()
    })


def actor_fields(user: dict | None) -> tuple[str | None, str]:
    if not user:
        return None, "system"
    return str(user["_id"]), user.get("role", "customer")
