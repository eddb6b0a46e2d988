"""Models for membership reconciliation."""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class DiscrepancyType(str, enum.Enum):
    """Kinds of divergence between billing provider state and stored records."""
    NO_PROVIDER_CUSTOMER = "NO_PROVIDER_CUSTOMER"
    MISSING_USER = "MISSING_USER"
    MISSING_MEMBERSHIP = "MISSING_MEMBERSHIP"
    MISSING_CARD = "MISSING_CARD"
    STATUS_MISMATCH = "STATUS_MISMATCH"
    PLAN_MISMATCH = "PLAN_MISMATCH"
    DATE_MISMATCH = "DATE_MISMATCH"
    CARD_STATUS_MISMATCH = "CARD_STATUS_MISMATCH"
    CARD_DATES_MISMATCH = "CARD_DATES_MISMATCH"
    NO_DISCREPANCY = "NO_DISCREPANCY"


class ProviderSnapshot(BaseModel):
    """Billing provider view of a customer and their chosen subscription."""
    customer_id: str = Field(..., description="Billing customer ID")
    email: str = Field(..., description="Customer email")
    name: Optional[str] = Field(None, description="Customer display name")
    subscription_id: str = Field(..., description="Billing subscription ID")
    status: str = Field(..., description="Subscription status")
    plan_type: str = Field(..., description="Plan type resolved from the price")
    current_period_start: datetime = Field(..., description="Current billing period start (UTC)")
    current_period_end: datetime = Field(..., description="Current billing period end (UTC)")
    cancel_at_period_end: bool = Field(default=False)

    @property
    def auto_renew(self) -> bool:
        return not self.cancel_at_period_end


class StoreMembershipView(BaseModel):
    id: str
    stripe_subscription_id: Optional[str] = None
    status: str
    plan_type: str
    start_date: datetime
    end_date: datetime
    auto_renew: bool = False

    class Config:
        from_attributes = True


class StoreCardView(BaseModel):
    id: str
    membership_number: str
    status: str
    plan_type: str
    valid_from: datetime
    valid_until: datetime

    class Config:
        from_attributes = True


class StoreSnapshot(BaseModel):
    """Stored view of a member: the user plus their relevant membership and card."""
    user_id: str = Field(..., description="Internal user ID")
    email: str = Field(..., description="Stored email")
    name: Optional[str] = Field(None, description="Stored display name")
    stripe_customer_id: Optional[str] = Field(None, description="Linked billing customer ID")
    membership: Optional[StoreMembershipView] = None
    card: Optional[StoreCardView] = None


class ReconciliationPlan(BaseModel):
    actions: List[str] = Field(default_factory=list)
    can_reconcile: bool = False


class ReconciliationReport(BaseModel):
    """Ephemeral comparison of provider and store state for one email."""
    email: str = Field(..., description="Email the report was built for")
    provider_data: Optional[ProviderSnapshot] = Field(None, description="Billing provider snapshot")
    store_data: Optional[StoreSnapshot] = Field(None, description="Stored records snapshot")
    discrepancies: List[DiscrepancyType] = Field(default_factory=list, description="Ordered, de-duplicated tags")
    can_reconcile: bool = Field(default=False)
    reconcile_actions: List[str] = Field(default_factory=list, description="Planned corrective actions")
    generated_at: datetime = Field(..., description="When the report was built (UTC)")

    @property
    def in_sync(self) -> bool:
        return self.discrepancies == [DiscrepancyType.NO_DISCREPANCY]

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a compact view without the snapshots."""
        return {
            "email": self.email,
            "discrepancies": [d.value for d in self.discrepancies],
            "can_reconcile": self.can_reconcile,
            "reconcile_actions": self.reconcile_actions,
            "generated_at": self.generated_at.isoformat(),
        }

    def to_full_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ReconciliationResult(BaseModel):
    """Outcome of an executed reconciliation, including partial progress on failure."""
    success: bool
    email: str
    already_in_sync: bool = False
    actions_performed: List[str] = Field(default_factory=list)
    discrepancies: List[DiscrepancyType] = Field(default_factory=list)
    user_created: bool = False
    membership_updated: bool = False
    card_created: bool = False
    card_updated: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
