"""Builds provider and store snapshots for a member email."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..connectors.base import BillingGateway, choose_subscription, resolve_plan_type
from ..database.repository import UserRepository, MembershipRepository, CardRepository
from .models import ProviderSnapshot, StoreSnapshot, StoreMembershipView, StoreCardView

logger = logging.getLogger(__name__)


async def build_provider_snapshot(gateway: BillingGateway, email: str) -> Optional[ProviderSnapshot]:
    """Fetch the billing customer for an email and their chosen subscription.

    Returns None when the provider has no customer or the customer has no
    subscription at all.

    Raises:
        ProviderError: If the billing provider call fails.
    """
    customer = await gateway.get_customer_by_email(email)
    if customer is None:
        logger.info(f"No billing customer for {email}")
        return None

    subscriptions = await gateway.list_subscriptions(customer.id)
    subscription = choose_subscription(subscriptions)
    if subscription is None:
        logger.info(f"Billing customer {customer.id} has no subscriptions")
        return None

    return ProviderSnapshot(
        customer_id=customer.id,
        email=(customer.email or email).lower(),
        name=customer.name,
        subscription_id=subscription.id,
        status=subscription.status,
        plan_type=resolve_plan_type(subscription.price_id).value,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )


async def build_store_snapshot(
    session: AsyncSession,
    email: str,
    subscription_id: Optional[str] = None,
) -> Optional[StoreSnapshot]:
    """Read the stored user, membership and card for an email.

    The membership is the one tied to ``subscription_id`` when it exists,
    otherwise the user's active membership.
    """
    user = await UserRepository(session).get_by_email(email)
    if user is None:
        return None

    memberships = MembershipRepository(session)
    membership = None
    if subscription_id:
        membership = await memberships.get_by_subscription(user.id, subscription_id)
    if membership is None:
        membership = await memberships.get_active(user.id)

    card = await CardRepository(session).get_by_user(user.id)

    return StoreSnapshot(
        user_id=user.id,
        email=user.email,
        name=user.name,
        stripe_customer_id=user.stripe_customer_id,
        membership=StoreMembershipView.model_validate(membership) if membership else None,
        card=StoreCardView.model_validate(card) if card else None,
    )
