from typing import Optional

from fastapi import APIRouter, Depends, Query

from database import get_db
from utils.guards import parse_object_id
from utils.mongo import serialize_docs
from utils.security import require_role

router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# AUDIT LOGS (READ ONLY)
# =====================================================

@router.get("/audit-logs")
async def audit_logs(
    organization_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    severity: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    query = {}
    if organization_id:
        query["organization_id"] = parse_object_id(organization_id, "organization_id")
    if action:
        query["action"] = action
    if resource_type:
        query["resource_type"] = resource_type
    if resource_id:
        query["resource_id"] = resource_id
    if severity:
        query["severity"] = severity

    total = await db.audit_logs.count_documents(query)
    rows = await (
        db.audit_logs.find(query)
        .sort("created_at", -1)
        .skip((page - 1) * page_size)
        .limit(page_size)
        .to_list(page_size)
    )

    return {"total": total, "page": page, "page_size": page_size, "logs": serialize_docs(rows)}
