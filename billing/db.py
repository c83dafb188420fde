"""
Billing Database Functions

Database operations for subscriptions, profiles, plans and the
user_features view. Every function takes a cursor; the caller owns the
transaction.

subscriptions has a UNIQUE constraint on user_id, so every write is an
upsert or an update keyed on user_id. Writes never touch a row that holds
an active lifetime entitlement.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List

SUBSCRIPTION_COLUMNS = (
    'tier',
    'status',
    'is_lifetime',
    'plan_id',
    'stripe_customer_id',
    'stripe_subscription_id',
    'stripe_price_id',
    'current_period_start',
    'current_period_end',
)

# Suppresses any write over an active lifetime entitlement
LIFETIME_GUARD = "NOT (subscriptions.is_lifetime IS TRUE AND subscriptions.status = 'active')"


def get_subscription(cur, user_id: str) -> Optional[Dict[str, Any]]:
    """
    Get the subscription row for a user.

    Args:
        cur: Database cursor
        user_id: Supabase auth user UUID

    Returns:
        Subscription dict or None
    """
    cur.execute(
        'SELECT * FROM subscriptions WHERE user_id = %s',
        (user_id,)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def upsert_subscription(cur, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Insert or update the single subscription row for a user.

    Args:
        cur: Database cursor
        user_id: Supabase auth user UUID
        fields: Column values, keys from SUBSCRIPTION_COLUMNS

    Returns:
        The written row, or None when the row holds an active lifetime
        entitlement and the update was skipped
    """
    unknown = set(fields) - set(SUBSCRIPTION_COLUMNS)
    if unknown:
        raise ValueError(f'Unknown subscription columns: {sorted(unknown)}')

    columns = [c for c in SUBSCRIPTION_COLUMNS if c in fields]
    params = [user_id] + [fields[c] for c in columns]

    insert_cols = ', '.join(['user_id'] + columns + ['updated_at'])
    placeholders = ', '.join(['%s'] * (len(columns) + 1) + ['NOW()'])
    assignments = ', '.join(
        [f'{c} = EXCLUDED.{c}' for c in columns] + ['updated_at = NOW()']
    )

    sql = f'''INSERT INTO subscriptions ({insert_cols})
              VALUES ({placeholders})
              ON CONFLICT (user_id) DO UPDATE SET {assignments}
              WHERE {LIFETIME_GUARD}
              RETURNING *'''

    cur.execute(sql, params)
    row = cur.fetchone()
    return dict(row) if row else None


def update_subscription_status(
    cur,
    user_id: str,
    stripe_subscription_id: str,
    status: str,
    current_period_end: Optional[datetime] = None
) -> Optional[Dict[str, Any]]:
    """
    Set the status of a user's subscription row, matched on both the
    user and the Stripe subscription ID.

    Args:
        cur: Database cursor
        user_id: Supabase auth user UUID
        stripe_subscription_id: Stripe subscription ID (sub_xxx)
        status: New status
        current_period_end: New period end (if changing)

    Returns:
        Updated subscription dict or None if nothing matched
    """
    updates = ['status = %s']
    params: List[Any] = [status]

    if current_period_end is not None:
        updates.append('current_period_end = %s')
        params.append(current_period_end)

    updates.append('updated_at = NOW()')
    params.extend([user_id, stripe_subscription_id])

    sql = f'''UPDATE subscriptions
              SET {', '.join(updates)}
              WHERE user_id = %s
                AND stripe_subscription_id = %s
                AND {LIFETIME_GUARD}
              RETURNING *'''

    cur.execute(sql, params)
    row = cur.fetchone()
    return dict(row) if row else None


def get_user_id_by_customer(cur, stripe_customer_id: str) -> Optional[str]:
    """
    Reverse lookup of a user by Stripe customer ID.

    Args:
        cur: Database cursor
        stripe_customer_id: Stripe customer ID (cus_xxx)

    Returns:
        User UUID as a string, or None
    """
    if not stripe_customer_id:
        return None
    cur.execute(
        'SELECT user_id FROM profiles WHERE stripe_customer_id = %s LIMIT 1',
        (stripe_customer_id,)
    )
    row = cur.fetchone()
    return str(row['user_id']) if row else None


def set_profile_customer_id(cur, user_id: str, stripe_customer_id: str) -> bool:
    """
    Store a Stripe customer ID on the user's profile if it has none yet.

    Returns:
        True if the profile was updated
    """
    cur.execute(
        '''UPDATE profiles SET stripe_customer_id = %s
           WHERE user_id = %s AND stripe_customer_id IS NULL
           RETURNING user_id''',
        (stripe_customer_id, user_id)
    )
    return cur.fetchone() is not None


def mark_early_bird_redeemed(cur, user_id: str) -> None:
    cur.execute(
        'UPDATE profiles SET early_bird_redeemed = true WHERE user_id = %s',
        (user_id,)
    )


def get_user_features(cur, user_id: str) -> Optional[Dict[str, Any]]:
    """
    Get the derived feature flags for a user.

    Reads the user_features view joined with the profile's customer ID.
    """
    cur.execute(
        '''SELECT uf.*, p.stripe_customer_id, p.display_name
           FROM user_features uf
           JOIN profiles p ON p.user_id = uf.user_id
           WHERE uf.user_id = %s''',
        (user_id,)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def get_plan_by_price_id(cur, price_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        'SELECT id, name, price_id, level FROM plans WHERE price_id = %s',
        (price_id,)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def list_plans(cur) -> List[Dict[str, Any]]:
    """List catalog plans ordered by level."""
    cur.execute('SELECT id, name, price_id, level FROM plans ORDER BY level ASC')
    return [dict(r) for r in cur.fetchall()]
