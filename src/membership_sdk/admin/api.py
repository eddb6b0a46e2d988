"""API endpoints for membership administration."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import (
    AdminIdentity,
    Authorizer,
    SessionVerifier,
    get_authorizer,
    get_session_verifier,
    limiter,
    require_admin,
)
from ..connectors.base import BillingGateway
from ..connectors.stripe_connector import StripeGateway
from ..database import get_db
from ..errors import ValidationError
from .service import AdminMembershipService, DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def get_billing_gateway() -> BillingGateway:
    """Default gateway dependency; tests override it with a simulator."""
    return StripeGateway()


def get_admin_service(
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
    verifier: SessionVerifier = Depends(get_session_verifier),
    authorizer: Authorizer = Depends(get_authorizer),
) -> AdminMembershipService:
    return AdminMembershipService(db, gateway, verifier=verifier, authorizer=authorizer)


class CreateMemberBody(BaseModel):
    email: str
    plan_type: str = Field(..., description="individual or family")
    start_date: datetime
    end_date: datetime
    status: str = Field(default="active", description="active, complimentary or legacy")
    name: Optional[str] = None
    phone: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    notes: Optional[str] = None


class UpdateMemberBody(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    reason: Optional[str] = Field(None, description="Why the change is made")


class ExportBody(BaseModel):
    format: str = Field(default="csv", description="csv or json")
    include_email: bool = True
    include_phone: bool = False
    status: Optional[str] = Field(None, description="Only members whose current membership has this status")


class VerifyQRBody(BaseModel):
    qr_data: str = Field(..., description="Signed payload scanned from a membership card")


class AdjustMembershipBody(BaseModel):
    end_date: Optional[datetime] = Field(None, description="New membership end date")
    status: Optional[str] = Field(None, description="New membership status")
    reason: Optional[str] = Field(None, description="Why the change is made")


class DeleteMemberBody(BaseModel):
    reason: Optional[str] = Field(None, description="Why the member is deleted")
    cancel_subscription: bool = Field(default=False, description="Cancel the live billing subscription first")


class BulkImportBody(BaseModel):
    rows: Optional[List[Dict[str, Any]]] = Field(None, description="Rows keyed by field name")
    csv: Optional[str] = Field(None, description="CSV text with a header row")


class RefundBody(BaseModel):
    payment_id: str
    amount: Optional[int] = Field(None, description="Amount in minor units; full refund if omitted")
    reason: Optional[str] = None


class ReconcileBody(BaseModel):
    email: str


@router.get("/check")
async def check_admin(admin: AdminIdentity = Depends(require_admin)):
    """Confirm the bearer session grants admin rights."""
    return {"is_admin": True, "id": admin.id, "email": admin.email}


@router.get("/stats")
async def membership_stats(
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    stats = await service.get_stats()
    return stats.model_dump(mode="json")


@router.post("/export")
@limiter.limit("10/minute")
async def export_members(
    request: Request,
    body: ExportBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    """Download members as a CSV or JSON attachment."""
    export = await service.export_members(
        export_format=body.format,
        include_email=body.include_email,
        include_phone=body.include_phone,
        status=body.status,
    )
    logger.info(f"Admin {admin.id} exported {export.count} members as {body.format}")
    return Response(
        content=export.content,
        media_type=export.media_type,
        headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
    )


@router.post("/members", status_code=201)
async def create_member(
    body: CreateMemberBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    member = await service.create_member(
        admin,
        email=body.email,
        plan_type=body.plan_type,
        start_date=body.start_date,
        end_date=body.end_date,
        status=body.status,
        name=body.name,
        phone=body.phone,
        stripe_customer_id=body.stripe_customer_id,
        notes=body.notes,
    )
    return member.model_dump(mode="json")


@router.get("/members")
async def search_members(
    q: Optional[str] = Query(default=None, description="Email, name or membership number"),
    page: int = Query(default=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE),
    status: Optional[str] = Query(default=None),
    plan_type: Optional[str] = Query(default=None),
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    result = await service.search_members(q, page=page, page_size=page_size, status=status, plan_type=plan_type)
    return result.model_dump(mode="json")


@router.get("/members/expiring")
async def expiring_members(
    days: int = Query(default=30, description="Window in days"),
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    members = await service.get_expiring_members(days)
    return {"items": [m.model_dump(mode="json") for m in members], "total": len(members)}


@router.post("/members/import")
@limiter.limit("10/minute")
async def import_members(
    request: Request,
    body: BulkImportBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    """Bulk import members from JSON rows or CSV text."""
    if body.csv:
        result = await service.bulk_import_csv(admin, body.csv)
    elif body.rows is not None:
        result = await service.bulk_import_members(admin, body.rows)
    else:
        raise ValidationError("rows", "Provide either rows or csv")
    return result.model_dump(mode="json")


@router.get("/members/{user_id}")
async def get_member(
    user_id: str,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    member = await service.get_member(user_id)
    return member.model_dump(mode="json")


@router.patch("/members/{user_id}")
async def update_member(
    user_id: str,
    body: UpdateMemberBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    result = await service.update_member(
        admin,
        user_id,
        reason=body.reason,
        email=body.email,
        name=body.name,
        phone=body.phone,
    )
    return result.model_dump(mode="json")


@router.get("/members/{user_id}/payments")
async def payment_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=100),
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    payments = await service.get_payment_history(user_id, limit=limit)
    return {"items": [p.model_dump(mode="json") for p in payments]}


@router.get("/members/{user_id}/audit")
async def member_audit_log(
    user_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    entries = await service.get_member_audit_log(user_id, limit=limit)
    return {"items": [e.to_dict() for e in entries]}


@router.patch("/members/{user_id}/memberships/{membership_id}")
async def adjust_membership(
    user_id: str,
    membership_id: str,
    body: AdjustMembershipBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    member = await service.adjust_membership(
        admin,
        user_id,
        membership_id,
        reason=body.reason,
        end_date=body.end_date,
        status=body.status,
    )
    return member.model_dump(mode="json")


@router.delete("/members/{user_id}")
async def delete_member(
    user_id: str,
    body: DeleteMemberBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    member = await service.delete_member(
        admin,
        user_id,
        reason=body.reason,
        cancel_subscription=body.cancel_subscription,
    )
    return member.model_dump(mode="json")


@router.post("/members/{user_id}/refund")
async def refund_payment(
    user_id: str,
    body: RefundBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    refund = await service.issue_refund(
        admin,
        user_id,
        body.payment_id,
        amount=body.amount,
        reason=body.reason,
    )
    return refund.model_dump()


@router.get("/reconcile")
async def validate_reconciliation(
    email: str = Query(..., description="Member email"),
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    """Report discrepancies for an email without changing anything."""
    report = await service.validate_reconciliation(email)
    return report.to_full_dict()


@router.post("/reconcile")
@limiter.limit("30/minute")
async def execute_reconciliation(
    request: Request,
    body: ReconcileBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    """Re-derive the report for an email and apply its corrections."""
    result = await service.execute_reconciliation(body.email, admin=admin)
    return result.model_dump(mode="json")


@router.get("/verify/{membership_number}")
async def verify_membership(
    membership_number: str,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    result = await service.verify_membership(membership_number)
    return result.model_dump(mode="json")


@router.post("/verify/qr")
async def verify_qr(
    body: VerifyQRBody,
    admin: AdminIdentity = Depends(require_admin),
    service: AdminMembershipService = Depends(get_admin_service),
):
    """Verify the signed payload encoded in a card's QR code."""
    result = await service.verify_qr(body.qr_data)
    return result.model_dump(mode="json")
