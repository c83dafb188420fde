"""
Fortune Magnet Plan Definitions

Plan tiers:
- Essential: entry tier, 28-day or annual billing
- Growth: mid tier, 28-day or annual billing
- Pro: top recurring tier
- Lifetime: one-time payment, permanent access

Annual plans also have an early-bird variant, offered only while the
user's free trial is active and the offer has not been redeemed.
"""

import os
import re
from typing import Optional, Dict, Any

from billing.errors import ConfigurationError

TIERS = ('essential', 'growth', 'pro', 'lifetime')

# Stripe Price IDs come from the environment, one variable per tier/period.
# The app originally shipped the essential tier as "basic", so the old
# variable names are still honoured as a fallback.
PRICE_TABLE: Dict[str, Dict[str, Any]] = {
    'essential_28d': {
        'tier': 'essential', 'period': '28d', 'early_bird': False,
        'env': 'PRICE_ESSENTIAL_28D', 'legacy_env': 'PRICE_BASIC_28D'
    },
    'essential_annual': {
        'tier': 'essential', 'period': 'annual', 'early_bird': False,
        'env': 'PRICE_ESSENTIAL_ANNUAL', 'legacy_env': 'PRICE_BASIC_ANNUAL'
    },
    'essential_annual_eb': {
        'tier': 'essential', 'period': 'annual', 'early_bird': True,
        'env': 'PRICE_ESSENTIAL_ANNUAL_EB', 'legacy_env': 'PRICE_BASIC_ANNUAL_EB'
    },
    'growth_28d': {
        'tier': 'growth', 'period': '28d', 'early_bird': False,
        'env': 'PRICE_GROWTH_28D'
    },
    'growth_annual': {
        'tier': 'growth', 'period': 'annual', 'early_bird': False,
        'env': 'PRICE_GROWTH_ANNUAL'
    },
    'growth_annual_eb': {
        'tier': 'growth', 'period': 'annual', 'early_bird': True,
        'env': 'PRICE_GROWTH_ANNUAL_EB'
    },
    'pro_28d': {
        'tier': 'pro', 'period': '28d', 'early_bird': False,
        'env': 'PRICE_PRO_28D'
    },
    'pro_annual': {
        'tier': 'pro', 'period': 'annual', 'early_bird': False,
        'env': 'PRICE_PRO_ANNUAL'
    },
    'pro_annual_eb': {
        'tier': 'pro', 'period': 'annual', 'early_bird': True,
        'env': 'PRICE_PRO_ANNUAL_EB'
    },
    'lifetime_oneoff': {
        'tier': 'lifetime', 'period': 'lifetime', 'early_bird': False,
        'env': 'PRICE_LIFETIME_ONEOFF'
    },
}

# Plan keys sent by older clients
LEGACY_PLAN_KEYS = {
    'basic_28d': 'essential_28d',
    'basic_annual': 'essential_annual',
    'basic_annual_eb': 'essential_annual_eb',
    'lifetime': 'lifetime_oneoff',
}


def _env_price(entry: Dict[str, Any]) -> str:
    price_id = os.environ.get(entry['env'], '')
    if not price_id and entry.get('legacy_env'):
        price_id = os.environ.get(entry['legacy_env'], '')
    return price_id


def price_catalog() -> Dict[str, Dict[str, Any]]:
    """
    Get every plan key with its currently configured Stripe price ID.

    Returns:
        Dict of plan key -> entry (tier, period, early_bird, price_id).
        Entries whose variable is unset have an empty price_id.
    """
    catalog = {}
    for key, entry in PRICE_TABLE.items():
        catalog[key] = {
            'plan': key,
            'tier': entry['tier'],
            'period': entry['period'],
            'early_bird': entry['early_bird'],
            'price_id': _env_price(entry)
        }
    return catalog


def resolve_plan_key(plan: str) -> Dict[str, Any]:
    """
    Resolve a plan key (current or legacy) to its catalog entry.

    Raises:
        ConfigurationError: unknown key, or no price configured for it
    """
    key = LEGACY_PLAN_KEYS.get(plan, plan)
    entry = price_catalog().get(key)
    if not entry or not entry['price_id']:
        raise ConfigurationError(f'Invalid plan: {plan}', setting=PRICE_TABLE.get(key, {}).get('env'))
    return entry


def early_bird_price(tier: str) -> Dict[str, Any]:
    """
    Get the early-bird annual variant for a tier.

    Raises:
        ConfigurationError: tier has no early-bird price configured
    """
    if tier == 'basic':
        tier = 'essential'
    entry = price_catalog().get(f'{tier}_annual_eb')
    if not entry or not entry['price_id']:
        raise ConfigurationError(f'No early bird price for tier: {tier}')
    return entry


def find_price(price_id: str) -> Optional[Dict[str, Any]]:
    """Reverse lookup of a Stripe price ID in the catalog."""
    if not price_id:
        return None
    for entry in price_catalog().values():
        if entry['price_id'] == price_id:
            return entry
    return None


def tier_for_price(price_id: str, default: str = 'essential') -> str:
    """
    Map a Stripe price ID to a tier.

    Unknown prices fall back to `default`, so a price added in Stripe
    before the environment is updated still grants the entry tier.
    """
    entry = find_price(price_id)
    if entry:
        return entry['tier']
    return default


def is_early_bird_price(price_id: str) -> bool:
    entry = find_price(price_id)
    return bool(entry and entry['early_bird'])


def promo_code_for(tier: str) -> Optional[str]:
    """Optional promotion code applied to early-bird subscription checkouts."""
    code = os.environ.get(f'PROMO_EARLY_BIRD_{tier.upper()}_ANNUAL_CODE')
    if not code and tier in ('essential', 'basic'):
        code = os.environ.get('PROMO_EARLY_BIRD_BASIC_ANNUAL_CODE')
    return code or None


def billing_cycle_for(name: str) -> str:
    """Billing cycle label for a `plans` row, derived from its name."""
    name = (name or '').lower()
    if '28d' in name or '28 d' in name:
        return '28d'
    if 'annual' in name:
        return 'annual'
    if 'lifetime' in name:
        return 'one_time'
    return 'monthly'


def period_for_plan_name(name: str) -> str:
    """Period for a `plans` row, in the same terms as PRICE_TABLE."""
    cycle = billing_cycle_for(name)
    return 'lifetime' if cycle == 'one_time' else cycle


def tier_for_plan_name(name: str) -> str:
    """Tier label for a `plans` row, matched on whole words of its name."""
    words = set(re.findall(r'[a-z0-9]+', (name or '').lower()))
    if 'growth' in words:
        return 'growth'
    if 'pro' in words:
        return 'pro'
    if 'ultimate' in words or 'lifetime' in words:
        return 'lifetime'
    return 'essential'
