"""
Checkout, Portal and Pricing

Creates Stripe Checkout and Billing Portal sessions for an authenticated
user, and lists the plan catalog with live Stripe prices.
"""

import os
from typing import Optional, Dict, Any

import stripe

from billing.db import (
    get_user_features,
    get_plan_by_price_id,
    set_profile_customer_id,
    list_plans,
)
from billing.errors import BillingError, ConfigurationError, EligibilityError
from billing.plans import (
    resolve_plan_key,
    early_bird_price,
    find_price,
    promo_code_for,
    billing_cycle_for,
    period_for_plan_name,
    tier_for_plan_name,
)
from billing.steplog import log_step

DEFAULT_ORIGIN = 'http://localhost:3000'
PRODUCTION_URL = 'https://fortune-magnet.vercel.app'


def configure_stripe() -> None:
    """Set the Stripe API key, failing if it is not configured."""
    stripe_key = os.environ.get('STRIPE_SECRET_KEY')
    if not stripe_key:
        raise ConfigurationError('STRIPE_SECRET_KEY is not set', setting='STRIPE_SECRET_KEY')
    stripe.api_key = stripe_key


def resolve_price(cur, body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Resolve the requested price from a checkout request body.

    Accepts, in order of precedence:
        {"plan": "growth_annual"}            legacy plan key
        {"earlyBird": true, "tier": "growth"} early-bird request
        {"priceId": "price_xxx"}             explicit price

    Returns:
        Dict with price_id, tier, plan, early_bird

    Raises:
        ConfigurationError: price cannot be resolved
    """
    plan = body.get('plan')
    if plan:
        return resolve_plan_key(plan)

    if body.get('earlyBird'):
        tier = body.get('tier')
        if not tier:
            raise ConfigurationError('Tier is required for early bird checkout')
        return early_bird_price(tier)

    price_id = body.get('priceId')
    if not price_id:
        raise ConfigurationError('Plan or priceId is required')

    entry = find_price(price_id)
    if entry:
        return entry

    catalog_plan = get_plan_by_price_id(cur, price_id)
    if catalog_plan:
        name = catalog_plan.get('name') or ''
        return {
            'plan': str(catalog_plan.get('id')),
            'tier': tier_for_plan_name(name),
            'period': period_for_plan_name(name),
            'early_bird': 'early bird' in name.lower(),
            'price_id': price_id
        }

    raise ConfigurationError(f'Unknown price: {price_id}')


def check_early_bird_eligibility(user_id: str, features: Dict[str, Any]) -> None:
    """Early bird requires an active trial and an unredeemed offer."""
    if not features.get('is_trial_active') or features.get('early_bird_redeemed'):
        raise EligibilityError(user_id=user_id)


def find_customer_id(cur, user: Dict[str, Any], features: Dict[str, Any], create: bool = False) -> Optional[str]:
    """
    Find the user's Stripe customer, saving a newly found ID on the profile.

    Looks at the profile first, then searches Stripe by email. With
    create=True a new customer is created when none exists.
    """
    customer_id = features.get('stripe_customer_id')
    if customer_id:
        return customer_id

    if user.get('email'):
        customers = stripe.Customer.list(email=user['email'], limit=1)
        if customers.data:
            customer_id = customers.data[0].id

    if not customer_id and create:
        customer = stripe.Customer.create(
            email=user.get('email'),
            name=features.get('display_name'),
            metadata={'supabase_user_id': user['user_id']}
        )
        customer_id = customer.id

    if customer_id:
        set_profile_customer_id(cur, user['user_id'], customer_id)
        log_step('CREATE-CHECKOUT', 'Customer ID saved on profile', {'userId': user['user_id'], 'customerId': customer_id})

    return customer_id


def create_checkout_session(cur, user: Dict[str, Any], body: Dict[str, Any], origin: Optional[str] = None) -> Dict[str, str]:
    """
    Create a Stripe Checkout Session for the authenticated user.

    Args:
        cur: Database cursor
        user: {'user_id', 'email'} from the bearer token
        body: Request body ({plan? | priceId? | earlyBird?, tier?, returnUrl?})
        origin: Request Origin header, used for success/cancel URLs

    Returns:
        {'url': checkout URL, 'sessionId': session ID}
    """
    configure_stripe()
    user_id = user['user_id']
    log_step('CREATE-CHECKOUT', 'User authenticated', {'userId': user_id, 'email': user.get('email')})

    features = get_user_features(cur, user_id)
    if not features:
        log_step('CREATE-CHECKOUT', 'User features missing', {'userId': user_id})
        raise BillingError('Error fetching user features', code='FEATURES_NOT_FOUND')

    selection = resolve_price(cur, body)
    price_id = selection['price_id']
    log_step('CREATE-CHECKOUT', 'Price resolved', selection)

    if selection['early_bird']:
        check_early_bird_eligibility(user_id, features)

    customer_id = find_customer_id(cur, user, features)

    price = stripe.Price.retrieve(price_id)
    mode = 'payment' if price.type == 'one_time' else 'subscription'

    origin = origin or DEFAULT_ORIGIN
    metadata = {
        'user_id': user_id,
        'tier': selection['tier'],
        'plan': selection['plan'],
        'price_id': price_id,
        'early_bird': 'true' if selection['early_bird'] else 'false',
    }

    params = {
        'mode': mode,
        'line_items': [{'price': price_id, 'quantity': 1}],
        'client_reference_id': user_id,
        'success_url': body.get('returnUrl') or f'{origin}/billing/success',
        'cancel_url': f'{origin}/billing/cancel',
        'metadata': metadata,
    }
    if customer_id:
        params['customer'] = customer_id
    elif user.get('email'):
        params['customer_email'] = user['email']

    if mode == 'subscription':
        params['subscription_data'] = {'metadata': {'user_id': user_id}}
        if selection['early_bird']:
            promo_code = promo_code_for(selection['tier'])
            if promo_code:
                params['discounts'] = [{'promotion_code': promo_code}]

    session = stripe.checkout.Session.create(**params)
    log_step('CREATE-CHECKOUT', 'Checkout session created', {'sessionId': session.id, 'mode': mode})

    return {'url': session.url, 'sessionId': session.id}


def create_portal_session(cur, user: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, str]:
    """Create a Stripe Billing Portal session, creating the customer if needed."""
    configure_stripe()

    features = get_user_features(cur, user['user_id']) or {}
    customer_id = find_customer_id(cur, user, features, create=True)

    return_url = (
        body.get('return_url')
        or body.get('returnUrl')
        or os.environ.get('SITE_URL')
        or PRODUCTION_URL
    )

    session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
    print(f"[PORTAL] Portal session created for user {user['user_id']}", flush=True)
    return {'url': session.url}


def list_pricing(cur, user: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    List catalog plans with live Stripe amounts and the caller's offer flags.

    Plans whose price cannot be fetched from Stripe are left out.
    """
    configure_stripe()

    flags = {'isTrialActive': False, 'earlyBirdEligible': False}
    if user:
        features = get_user_features(cur, user['user_id'])
        if features:
            is_trial_active = bool(features.get('is_trial_active'))
            flags = {
                'isTrialActive': is_trial_active,
                'earlyBirdEligible': is_trial_active and not features.get('early_bird_redeemed')
            }

    plans = list_plans(cur)
    if not plans:
        raise BillingError('No plans found', code='PLANS_NOT_FOUND')

    pricing = []
    for plan in plans:
        try:
            price = stripe.Price.retrieve(plan['price_id'])
        except stripe.StripeError as e:
            print(f"[LIST-PRICING] Error fetching price for plan {plan['id']}: {e}", flush=True)
            continue

        name = plan.get('name') or ''
        recurring = price.recurring if price.type != 'one_time' else None
        pricing.append({
            'id': plan['id'],
            'name': name,
            'tier': tier_for_plan_name(name),
            'billing_cycle': billing_cycle_for(name),
            'price_id': plan['price_id'],
            'isEarlyBird': 'early bird' in name.lower(),
            'amountCents': price.unit_amount or 0,
            'currency': price.currency or 'eur',
            'interval': 'one_time' if price.type == 'one_time' else (recurring.interval if recurring else 'month'),
            'intervalCount': recurring.interval_count if recurring else None,
        })

    print(f"[LIST-PRICING] Processed pricing for {len(pricing)} plans", flush=True)
    return {'pricing': pricing, 'flags': flags}
