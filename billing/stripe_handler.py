"""
Fortune Magnet Stripe Handler

HTTP surface for billing and the webhook reconciler that keeps one
subscriptions row per user in step with Stripe:
- checkout.session.completed: lifetime purchase, early-bird redemption
- customer.subscription.created / updated: tier, status and period bounds
- customer.subscription.deleted: status canceled, row retained
- invoice.paid / invoice.payment_failed: status active / past_due

Stripe delivers at least once and possibly out of order. Every write is
keyed on user_id, and an active lifetime entitlement is never overwritten
by a later event.
"""

import os
import json
import stripe
from datetime import datetime, timezone
from flask import Blueprint, request, jsonify, g

from auth import authenticate_request, require_user
from billing.checkout import create_checkout_session, create_portal_session, list_pricing
from billing.db import (
    get_subscription,
    upsert_subscription,
    update_subscription_status,
    get_user_id_by_customer,
    set_profile_customer_id,
    mark_early_bird_redeemed,
)
from billing.entitlements import is_lifetime_active, get_entitlement
from billing.errors import BillingError, AuthenticationError, SignatureVerificationError, UnresolvedUserError
from billing.plans import tier_for_price, is_early_bird_price
from billing.steplog import log_step

# Far-future sentinel for lifetime entitlements
LIFETIME_PERIOD_END = datetime(2099, 12, 31, tzinfo=timezone.utc)

WEBHOOK_TAG = 'STRIPE-WEBHOOK'
CHECKOUT_TAG = 'CREATE-CHECKOUT'

billing_bp = Blueprint('billing', __name__, url_prefix='/v2/billing')


def get_db_functions():
    """Import db functions lazily to avoid circular imports."""
    from app import get_db, get_cursor
    return get_db, get_cursor


def _from_timestamp(ts):
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


# =============================================================================
# Webhook verification and dispatch
# =============================================================================

def verify_event(payload: bytes, sig_header: str, secret: str) -> dict:
    """
    Verify a webhook payload against its Stripe-Signature header.

    Returns:
        The event as plain dicts

    Raises:
        SignatureVerificationError: missing header, bad payload or bad signature
    """
    if not sig_header:
        raise SignatureVerificationError('Missing Stripe-Signature header')
    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except ValueError as e:
        raise SignatureVerificationError(f'Invalid payload: {e}')
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationError(f'Invalid signature: {e}')
    return json.loads(payload)


def process_event(cur, event: dict) -> None:
    """Route a verified event to its handler. Unknown types are logged only."""
    event_type = event.get('type')
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        log_step(WEBHOOK_TAG, 'Unhandled event type', {'type': event_type})
        return
    try:
        handler(cur, event['data']['object'])
    except UnresolvedUserError as e:
        log_step(WEBHOOK_TAG, 'Event dropped', e.to_dict())


def resolve_user_id(cur, client_reference_id: str = None, customer_id: str = None):
    """
    Resolve the user an event belongs to.

    The explicit reference wins; otherwise the Stripe customer ID is looked
    up against profiles. Returns None if neither resolves.
    """
    if client_reference_id:
        return client_reference_id
    if customer_id:
        return get_user_id_by_customer(cur, customer_id)
    return None


def _skip_if_lifetime(cur, user_id: str, event_label: str) -> bool:
    existing = get_subscription(cur, user_id)
    if is_lifetime_active(existing):
        log_step(WEBHOOK_TAG, f'Skipping {event_label}: lifetime entitlement active', {'userId': user_id})
        return True
    return False


# =============================================================================
# Event handlers
# =============================================================================

def handle_checkout_completed(cur, session: dict) -> None:
    """
    Handle a completed checkout session.

    One-time payments grant the lifetime entitlement here. Subscription
    checkouts write nothing: the subscription.created/updated events carry
    the full subscription and are authoritative.
    """
    metadata = session.get('metadata') or {}
    customer_id = session.get('customer')
    log_step(WEBHOOK_TAG, 'Processing checkout.session.completed', {'sessionId': session.get('id'), 'mode': session.get('mode')})

    user_id = resolve_user_id(
        cur,
        session.get('client_reference_id') or metadata.get('user_id'),
        customer_id
    )
    if not user_id:
        raise UnresolvedUserError('No user ID found for session', customer_id=customer_id)

    # Checkout may have created the customer, so later events can find the user
    if customer_id:
        set_profile_customer_id(cur, user_id, customer_id)

    if session.get('mode') == 'payment':
        if not _skip_if_lifetime(cur, user_id, 'lifetime checkout'):
            row = upsert_subscription(cur, user_id, {
                'tier': 'lifetime',
                'status': 'active',
                'is_lifetime': True,
                'plan_id': 'lifetime',
                'stripe_customer_id': customer_id,
                'stripe_subscription_id': None,
                'stripe_price_id': metadata.get('price_id'),
                'current_period_start': datetime.now(timezone.utc),
                'current_period_end': LIFETIME_PERIOD_END,
            })
            if row:
                log_step(WEBHOOK_TAG, 'Lifetime subscription created', {'userId': user_id})
    elif session.get('mode') == 'subscription':
        log_step(WEBHOOK_TAG, 'Subscription checkout completed, waiting for subscription.created event', {'userId': user_id})

    if _is_early_bird_checkout(metadata):
        mark_early_bird_redeemed(cur, user_id)
        log_step(WEBHOOK_TAG, 'Early bird marked as redeemed', {'userId': user_id})


def _is_early_bird_checkout(metadata: dict) -> bool:
    return (
        metadata.get('early_bird') == 'true'
        or '_eb' in (metadata.get('plan') or '')
        or is_early_bird_price(metadata.get('price_id'))
    )


def _first_item(subscription: dict) -> dict:
    items = (subscription.get('items') or {}).get('data') or []
    return items[0] if items else {}


def _period_bounds(subscription: dict):
    """Period bounds live on the subscription, or on its items in newer API versions."""
    item = _first_item(subscription)
    start = subscription.get('current_period_start') or item.get('current_period_start')
    end = subscription.get('current_period_end') or item.get('current_period_end')
    return _from_timestamp(start), _from_timestamp(end)


def handle_subscription_upserted(cur, subscription: dict) -> None:
    """Handle customer.subscription.created and customer.subscription.updated."""
    subscription_id = subscription.get('id')
    status = subscription.get('status')
    customer_id = subscription.get('customer')
    log_step(WEBHOOK_TAG, 'Processing subscription event', {'subscriptionId': subscription_id, 'status': status})

    metadata = subscription.get('metadata') or {}
    user_id = resolve_user_id(cur, metadata.get('user_id'), customer_id)
    if not user_id:
        raise UnresolvedUserError('No user ID found for subscription', customer_id=customer_id)

    if _skip_if_lifetime(cur, user_id, 'subscription event'):
        return

    price_id = (_first_item(subscription).get('price') or {}).get('id')
    tier = tier_for_price(price_id)
    period_start, period_end = _period_bounds(subscription)

    upsert_subscription(cur, user_id, {
        'tier': tier,
        'status': status,
        'is_lifetime': False,
        'plan_id': price_id or '',
        'stripe_customer_id': customer_id,
        'stripe_subscription_id': subscription_id,
        'stripe_price_id': price_id,
        'current_period_start': period_start,
        'current_period_end': period_end,
    })
    log_step(WEBHOOK_TAG, 'Subscription upserted successfully', {'userId': user_id, 'tier': tier, 'status': status})


def handle_subscription_deleted(cur, subscription: dict) -> None:
    """Mark the subscription canceled. The row is kept."""
    subscription_id = subscription.get('id')
    log_step(WEBHOOK_TAG, 'Processing customer.subscription.deleted', {'subscriptionId': subscription_id})

    metadata = subscription.get('metadata') or {}
    user_id = resolve_user_id(cur, metadata.get('user_id'), subscription.get('customer'))
    if not user_id:
        raise UnresolvedUserError('No user ID found for deleted subscription', customer_id=subscription.get('customer'))

    existing = get_subscription(cur, user_id)
    if is_lifetime_active(existing):
        log_step(WEBHOOK_TAG, 'Skipping subscription deletion: lifetime entitlement active', {'userId': user_id})
        return
    if existing and existing.get('stripe_subscription_id') == subscription_id and existing.get('status') == 'canceled':
        log_step(WEBHOOK_TAG, 'Subscription already canceled', {'userId': user_id})
        return

    ended_at = (
        _from_timestamp(subscription.get('ended_at'))
        or _from_timestamp(subscription.get('canceled_at'))
        or datetime.now(timezone.utc)
    )
    row = update_subscription_status(cur, user_id, subscription_id, 'canceled', current_period_end=ended_at)
    if row:
        log_step(WEBHOOK_TAG, 'Subscription marked as canceled', {'userId': user_id})
    else:
        log_step(WEBHOOK_TAG, 'Subscription not found for cancellation', {'userId': user_id, 'subscriptionId': subscription_id})


def _invoice_subscription_id(invoice: dict):
    subscription_id = invoice.get('subscription')
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get('id')
    details = ((invoice.get('parent') or {}).get('subscription_details') or {})
    return details.get('subscription')


def _set_invoice_status(cur, invoice: dict, status: str, event_label: str) -> None:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        log_step(WEBHOOK_TAG, f'{event_label} without subscription', {'invoiceId': invoice.get('id')})
        return

    log_step(WEBHOOK_TAG, f'Processing {event_label} for subscription', {'invoiceId': invoice.get('id'), 'subscriptionId': subscription_id})

    details = ((invoice.get('parent') or {}).get('subscription_details') or {})
    user_id = resolve_user_id(cur, (details.get('metadata') or {}).get('user_id'), invoice.get('customer'))
    if not user_id:
        raise UnresolvedUserError(f'No user ID found for {event_label}', customer_id=invoice.get('customer'))

    if _skip_if_lifetime(cur, user_id, event_label):
        return

    row = update_subscription_status(cur, user_id, subscription_id, status)
    if row:
        log_step(WEBHOOK_TAG, f'Subscription status updated to {status}', {'userId': user_id, 'subscriptionId': subscription_id})
    else:
        log_step(WEBHOOK_TAG, 'Subscription not found for invoice', {'userId': user_id, 'subscriptionId': subscription_id})


def handle_invoice_paid(cur, invoice: dict) -> None:
    """Force the subscription active, covering events that arrived out of order."""
    _set_invoice_status(cur, invoice, 'active', 'invoice.paid')


def handle_invoice_payment_failed(cur, invoice: dict) -> None:
    _set_invoice_status(cur, invoice, 'past_due', 'invoice.payment_failed')


EVENT_HANDLERS = {
    'checkout.session.completed': handle_checkout_completed,
    'customer.subscription.created': handle_subscription_upserted,
    'customer.subscription.updated': handle_subscription_upserted,
    'customer.subscription.deleted': handle_subscription_deleted,
    'invoice.paid': handle_invoice_paid,
    'invoice.payment_failed': handle_invoice_payment_failed,
}


# =============================================================================
# Routes
# =============================================================================

@billing_bp.route('/webhook', methods=['POST'])
def stripe_webhook():
    """
    Handle Stripe webhook events.

    Returns 400 when the signature cannot be verified and 500 when
    processing fails, so Stripe redelivers. Events for users that cannot
    be resolved are acknowledged and dropped.
    """
    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature')
    webhook_secret = os.environ.get('STRIPE_WEBHOOK_SECRET')

    if not webhook_secret:
        log_step(WEBHOOK_TAG, 'STRIPE_WEBHOOK_SECRET not configured')
        return jsonify({'error': 'Webhook secret not configured'}), 500

    try:
        event = verify_event(payload, sig_header, webhook_secret)
    except SignatureVerificationError as e:
        log_step(WEBHOOK_TAG, 'Webhook verification failed', {'error': e.message})
        return f'Webhook Error: {e.message}', 400

    log_step(WEBHOOK_TAG, 'Webhook verified', {'type': event.get('type'), 'id': event.get('id')})

    get_db, get_cursor = get_db_functions()
    db = get_db()
    cur = get_cursor()

    try:
        process_event(cur, event)
        db.commit()
    except Exception as e:
        db.rollback()
        log_step(WEBHOOK_TAG, 'ERROR processing webhook', {'error': str(e), 'type': event.get('type')})
        return jsonify({'error': str(e)}), 500
    finally:
        cur.close()

    return jsonify({'received': True}), 200


def _run_in_transaction(tag: str, fn, *args):
    """Run fn(cur, *args) in a request transaction, mapping failures to a 500."""
    get_db, get_cursor = get_db_functions()
    try:
        db = get_db()
        cur = get_cursor()
        try:
            result = fn(cur, *args)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()
    except BillingError as e:
        log_step(tag, 'ERROR', {'message': e.message, 'code': e.code})
        return jsonify({'error': e.message}), 500
    except Exception as e:
        log_step(tag, 'ERROR', {'message': str(e)})
        return jsonify({'error': str(e)}), 500
    return jsonify(result), 200


@billing_bp.route('/checkout', methods=['POST'])
def create_checkout():
    """
    Create a Stripe Checkout Session.

    Request body (one of):
        {"plan": "growth_annual", "returnUrl": "..."}
        {"priceId": "price_xxx"}
        {"earlyBird": true, "tier": "growth"}

    Returns:
        {"url": "...", "sessionId": "cs_..."} or {"error": "..."} with 500
    """
    log_step(CHECKOUT_TAG, 'Function started')
    try:
        user = authenticate_request()
    except AuthenticationError as e:
        log_step(CHECKOUT_TAG, 'ERROR', {'message': e.message})
        return jsonify({'error': e.message}), 500

    body = request.get_json(silent=True) or {}
    return _run_in_transaction(CHECKOUT_TAG, create_checkout_session, user, body, request.headers.get('Origin'))


@billing_bp.route('/portal', methods=['POST'])
@require_user
def create_portal():
    """Create a Stripe Billing Portal session for the current user."""
    body = request.get_json(silent=True) or {}
    return _run_in_transaction('PORTAL', create_portal_session, g.current_user, body)


@billing_bp.route('/pricing', methods=['GET'])
def get_pricing():
    """List plans with live prices. Auth is optional and only adds offer flags."""
    user = None
    if request.headers.get('Authorization'):
        try:
            user = authenticate_request()
        except AuthenticationError as e:
            print(f"[LIST-PRICING] Auth optional, continuing without user context: {e.message}", flush=True)
    return _run_in_transaction('LIST-PRICING', list_pricing, user)


@billing_bp.route('/subscription', methods=['GET'])
@require_user
def get_subscription_state():
    """Entitlement state for the current user."""
    return _run_in_transaction('SUBSCRIPTION', get_entitlement, g.current_user['user_id'])


# Health check endpoint for billing module
@billing_bp.route('/health', methods=['GET'])
def billing_health():
    """Health check for billing module."""
    return jsonify({
        'status': 'ok',
        'module': 'billing',
        'stripe_configured': bool(os.environ.get('STRIPE_SECRET_KEY')),
        'webhook_secret_configured': bool(os.environ.get('STRIPE_WEBHOOK_SECRET'))
    })
