"""
Fortune Magnet Billing Module

This module handles:
- Plan catalog and Stripe price lookup
- Stripe integration (checkout sessions, portal sessions, webhooks)
- Subscription reconciliation and entitlement state
"""

from billing.plans import PRICE_TABLE, price_catalog, resolve_plan_key, tier_for_price
from billing.db import (
    get_subscription,
    upsert_subscription,
    update_subscription_status,
    get_user_id_by_customer,
    get_user_features
)
from billing.entitlements import derive_entitlement, is_lifetime_active

__all__ = [
    'PRICE_TABLE', 'price_catalog', 'resolve_plan_key', 'tier_for_price',
    'get_subscription', 'upsert_subscription', 'update_subscription_status',
    'get_user_id_by_customer', 'get_user_features',
    'derive_entitlement', 'is_lifetime_active'
]
