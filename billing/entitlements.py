"""
Entitlement State

Derives what a user can access from their subscription row and the
user_features view. This is what clients poll to gate features.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any

ACCESS_STATUSES = ('active', 'trialing')


def is_lifetime_active(subscription: Optional[Dict[str, Any]]) -> bool:
    """True once a one-time purchase has granted a lifetime entitlement."""
    if not subscription:
        return False
    return bool(subscription.get('is_lifetime')) and subscription.get('status') == 'active'


def _as_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def derive_entitlement(
    subscription: Optional[Dict[str, Any]],
    features: Optional[Dict[str, Any]],
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Build the entitlement state for a user.

    A recurring subscription counts as active while its status is active or
    trialing and its period has not ended. A lifetime entitlement counts as
    active regardless of period end. Full access is granted by an active
    entitlement or by an active free trial.

    Args:
        subscription: subscriptions row or None
        features: user_features row or None
        now: Reference time (defaults to current UTC time)

    Returns:
        Entitlement dict
    """
    now = now or datetime.now(timezone.utc)
    features = features or {}

    period_end = _as_datetime(subscription.get('current_period_end')) if subscription else None
    lifetime = is_lifetime_active(subscription)

    is_active = lifetime
    if subscription and not lifetime and subscription.get('status') in ACCESS_STATUSES:
        is_active = period_end is not None and period_end > now

    is_trial_active = bool(features.get('is_trial_active'))
    early_bird_eligible = is_trial_active and not features.get('early_bird_redeemed')

    return {
        'tier': subscription.get('tier') if subscription and subscription.get('tier') else 'free',
        'status': subscription.get('status') if subscription else None,
        'is_lifetime': bool(subscription.get('is_lifetime')) if subscription else False,
        'is_active': is_active,
        'has_full_access': is_active or is_trial_active,
        'is_trial_active': is_trial_active,
        'early_bird_eligible': early_bird_eligible,
        'current_period_end': period_end.isoformat() if period_end else None,
    }


def get_entitlement(cur, user_id: str) -> Dict[str, Any]:
    """Load the subscription and feature rows for a user and derive the state."""
    from billing.db import get_subscription, get_user_features

    subscription = get_subscription(cur, user_id)
    features = get_user_features(cur, user_id)
    return derive_entitlement(subscription, features)
