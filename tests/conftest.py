"""Shared fixtures: in-memory billing store, Flask client, signed webhook delivery."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import jwt
import pytest

WEBHOOK_SECRET = 'whsec_test_secret'
JWT_SECRET = 'test-jwt-secret'

PRICE_ENV = {
    'PRICE_ESSENTIAL_28D': 'price_essential_28d',
    'PRICE_ESSENTIAL_ANNUAL': 'price_essential_annual',
    'PRICE_ESSENTIAL_ANNUAL_EB': 'price_essential_annual_eb',
    'PRICE_GROWTH_28D': 'price_growth_28d',
    'PRICE_GROWTH_ANNUAL': 'price_growth_annual',
    'PRICE_GROWTH_ANNUAL_EB': 'price_growth_annual_eb',
    'PRICE_PRO_28D': 'price_pro_28d',
    'PRICE_PRO_ANNUAL': 'price_pro_annual',
    'PRICE_LIFETIME_ONEOFF': 'price_lifetime_oneoff',
}


class MemoryStore:
    """In-memory stand-in for billing.db with the same keys and lifetime guard."""

    def __init__(self):
        self.subscriptions = {}
        self.profiles = {}
        self.features = {}
        self.plans = []

    def add_user(self, user_id, customer_id=None, trial_active=False, early_bird_redeemed=False):
        self.profiles[user_id] = {
            'user_id': user_id,
            'stripe_customer_id': customer_id,
            'early_bird_redeemed': early_bird_redeemed,
            'display_name': None,
        }
        self.features[user_id] = {'user_id': user_id, 'is_trial_active': trial_active}

    @staticmethod
    def _locked(row):
        return bool(row and row.get('is_lifetime') and row.get('status') == 'active')

    def get_subscription(self, cur, user_id):
        row = self.subscriptions.get(user_id)
        return dict(row) if row else None

    def upsert_subscription(self, cur, user_id, fields):
        existing = self.subscriptions.get(user_id)
        if existing is None:
            row = {'user_id': user_id, 'is_lifetime': False}
            row.update(fields)
            self.subscriptions[user_id] = row
            return dict(row)
        if self._locked(existing):
            return None
        existing.update(fields)
        return dict(existing)

    def update_subscription_status(self, cur, user_id, stripe_subscription_id, status, current_period_end=None):
        row = self.subscriptions.get(user_id)
        if not row or row.get('stripe_subscription_id') != stripe_subscription_id or self._locked(row):
            return None
        row['status'] = status
        if current_period_end is not None:
            row['current_period_end'] = current_period_end
        return dict(row)

    def get_user_id_by_customer(self, cur, stripe_customer_id):
        for profile in self.profiles.values():
            if stripe_customer_id and profile.get('stripe_customer_id') == stripe_customer_id:
                return profile['user_id']
        return None

    def set_profile_customer_id(self, cur, user_id, stripe_customer_id):
        profile = self.profiles.get(user_id)
        if profile is None or profile.get('stripe_customer_id'):
            return False
        profile['stripe_customer_id'] = stripe_customer_id
        return True

    def mark_early_bird_redeemed(self, cur, user_id):
        if user_id in self.profiles:
            self.profiles[user_id]['early_bird_redeemed'] = True

    def get_user_features(self, cur, user_id):
        if user_id not in self.features:
            return None
        profile = self.profiles.get(user_id, {})
        row = dict(self.features[user_id])
        row['stripe_customer_id'] = profile.get('stripe_customer_id')
        row['early_bird_redeemed'] = profile.get('early_bird_redeemed', False)
        row['display_name'] = profile.get('display_name')
        return row

    def get_plan_by_price_id(self, cur, price_id):
        for plan in self.plans:
            if plan['price_id'] == price_id:
                return dict(plan)
        return None

    def list_plans(self, cur):
        return sorted((dict(p) for p in self.plans), key=lambda p: p['level'])


@pytest.fixture(autouse=True)
def billing_env(monkeypatch):
    monkeypatch.setenv('STRIPE_SECRET_KEY', 'sk_test_123')
    monkeypatch.setenv('STRIPE_WEBHOOK_SECRET', WEBHOOK_SECRET)
    monkeypatch.setenv('SUPABASE_JWT_SECRET', JWT_SECRET)
    for name, value in PRICE_ENV.items():
        monkeypatch.setenv(name, value)


@pytest.fixture
def store(monkeypatch):
    import billing.checkout
    import billing.db
    import billing.stripe_handler

    memory = MemoryStore()
    targets = {
        billing.stripe_handler: [
            'get_subscription', 'upsert_subscription', 'update_subscription_status',
            'get_user_id_by_customer', 'set_profile_customer_id', 'mark_early_bird_redeemed',
        ],
        billing.checkout: [
            'get_user_features', 'get_plan_by_price_id', 'set_profile_customer_id', 'list_plans',
        ],
        billing.db: ['get_subscription', 'get_user_features'],
    }
    for module, names in targets.items():
        for name in names:
            monkeypatch.setattr(module, name, getattr(memory, name))
    return memory


@pytest.fixture
def db_conn():
    return MagicMock()


@pytest.fixture
def client(store, db_conn):
    from app import app

    app.config['TESTING'] = True
    cursor = MagicMock()
    with patch('billing.stripe_handler.get_db_functions', return_value=(lambda: db_conn, lambda: cursor)):
        with app.test_client() as test_client:
            yield test_client


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f'{timestamp}.{payload}'.encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


@pytest.fixture
def deliver(client):
    """POST a signed event to the webhook endpoint."""
    counter = {'n': 0}

    def _deliver(event_type, obj, event_id=None):
        counter['n'] += 1
        event = {
            'id': event_id or f"evt_{counter['n']}",
            'object': 'event',
            'type': event_type,
            'data': {'object': obj},
        }
        payload = json.dumps(event)
        return client.post(
            '/v2/billing/webhook',
            data=payload,
            headers={'Stripe-Signature': sign_payload(payload), 'Content-Type': 'application/json'},
        )

    return _deliver


def make_token(user_id='user-1', email='user@example.com', secret=JWT_SECRET, expires_in=3600):
    payload = {
        'sub': user_id,
        'email': email,
        'aud': 'authenticated',
        'exp': datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret, algorithm='HS256')


def subscription_object(sub_id='sub_1', customer='cus_1', status='active', price='price_essential_28d',
                        start=1700000000, end=1702419200, metadata=None):
    return {
        'id': sub_id,
        'object': 'subscription',
        'customer': customer,
        'status': status,
        'current_period_start': start,
        'current_period_end': end,
        'metadata': metadata or {},
        'items': {'data': [{'price': {'id': price}}]},
    }
