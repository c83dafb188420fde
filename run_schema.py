#!/usr/bin/env python3
"""Run the Postgres schema for Fortune Magnet billing (profiles, subscriptions, plans, user_features)"""

import os
import sys
import psycopg2

# Supabase connection string (Settings -> Database), with SSL
DATABASE_URL = os.environ.get('DATABASE_URL')

# Define each SQL statement explicitly
STATEMENTS = [
    # PART 1: PROFILE BILLING COLUMNS
    ('Add profiles.display_name',
     'ALTER TABLE public.profiles ADD COLUMN IF NOT EXISTS display_name TEXT'),
    ('Add profiles.trial_ends_at',
     'ALTER TABLE public.profiles ADD COLUMN IF NOT EXISTS trial_ends_at TIMESTAMPTZ'),
    ('Add profiles.early_bird_seen',
     'ALTER TABLE public.profiles ADD COLUMN IF NOT EXISTS early_bird_seen BOOLEAN DEFAULT false'),
    ('Add profiles.early_bird_redeemed',
     'ALTER TABLE public.profiles ADD COLUMN IF NOT EXISTS early_bird_redeemed BOOLEAN DEFAULT false'),
    ('Add profiles.stripe_customer_id',
     'ALTER TABLE public.profiles ADD COLUMN IF NOT EXISTS stripe_customer_id TEXT'),
    ('Create profiles customer index',
     'CREATE INDEX IF NOT EXISTS idx_profiles_stripe_customer ON public.profiles(stripe_customer_id)'),

    # PART 2: SUBSCRIPTIONS TABLE (one row per user)
    ('Create subscriptions table', '''
CREATE TABLE IF NOT EXISTS public.subscriptions (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  user_id UUID NOT NULL,
  tier TEXT,
  status TEXT NOT NULL DEFAULT 'active',
  is_lifetime BOOLEAN DEFAULT false,
  plan_id TEXT,
  stripe_customer_id TEXT,
  stripe_subscription_id TEXT,
  stripe_price_id TEXT,
  current_period_start TIMESTAMPTZ,
  current_period_end TIMESTAMPTZ,
  created_at TIMESTAMPTZ DEFAULT NOW(),
  updated_at TIMESTAMPTZ DEFAULT NOW(),
  CONSTRAINT subscriptions_user_id_key UNIQUE (user_id),
  CONSTRAINT subscriptions_status_check CHECK (status IN (
    'active', 'trialing', 'past_due', 'canceled', 'unpaid',
    'incomplete', 'incomplete_expired', 'expired', 'paused'
  ))
)'''),
    ('Create subscriptions stripe id index',
     'CREATE INDEX IF NOT EXISTS idx_subscriptions_stripe_sub ON public.subscriptions(stripe_subscription_id)'),

    # PART 3: PLAN CATALOG
    ('Create plans table', '''
CREATE TABLE IF NOT EXISTS public.plans (
  id SERIAL PRIMARY KEY,
  name TEXT NOT NULL,
  price_id TEXT NOT NULL UNIQUE,
  level INTEGER NOT NULL DEFAULT 0,
  created_at TIMESTAMPTZ DEFAULT NOW()
)'''),

    # PART 4: TRIAL FUNCTION (60 days, capped at 100 fortunes)
    ('Create is_trial_active function', '''
CREATE OR REPLACE FUNCTION public.is_trial_active(p_user_id uuid)
RETURNS boolean
LANGUAGE sql
STABLE
SECURITY INVOKER
AS $$
  SELECT
    (now() < p.trial_ends_at)
    AND ((SELECT count(*) FROM public.fortunes f WHERE f.user_id = p_user_id) < 100)
  FROM public.profiles p
  WHERE p.user_id = p_user_id;
$$'''),

    # PART 5: USER FEATURES VIEW
    ('Create user_features view', '''
CREATE OR REPLACE VIEW public.user_features AS
SELECT
  p.user_id,
  p.trial_ends_at,
  p.early_bird_seen,
  p.early_bird_redeemed,
  (p.early_bird_seen = true
   AND (p.early_bird_redeemed IS NULL OR p.early_bird_redeemed = false)
   AND public.is_trial_active(p.user_id)) AS early_bird_eligible,
  COALESCE(s.tier, 'free') AS subscription_tier,
  s.status AS subscription_status,
  s.is_lifetime,
  s.current_period_end,
  public.is_trial_active(p.user_id) AS is_trial_active,
  CASE
    WHEN s.is_lifetime = true AND s.status = 'active' THEN true
    WHEN s.status IN ('active', 'trialing') THEN true
    WHEN public.is_trial_active(p.user_id) THEN true
    ELSE false
  END AS has_full_access
FROM public.profiles p
LEFT JOIN public.subscriptions s
  ON s.user_id = p.user_id
 AND ((s.is_lifetime = true AND s.status = 'active') OR s.status IN ('active', 'trialing'))'''),

    # PART 6: ROW LEVEL SECURITY
    ('Enable RLS on subscriptions', 'ALTER TABLE public.subscriptions ENABLE ROW LEVEL SECURITY'),
    ('Enable RLS on plans', 'ALTER TABLE public.plans ENABLE ROW LEVEL SECURITY'),
    ('Create subscriptions read-own policy',
     'CREATE POLICY "Users can read own subscriptions only" ON public.subscriptions FOR SELECT TO authenticated USING (user_id = auth.uid())'),
    ('Create plans public read policy',
     'CREATE POLICY "plans_public_read" ON public.plans FOR SELECT USING (true)'),
    ('Grant user_features to authenticated',
     'GRANT SELECT ON public.user_features TO authenticated'),
]


def main():
    if not DATABASE_URL:
        print("DATABASE_URL environment variable not set")
        sys.exit(1)

    print("Connecting to Supabase Postgres...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Running schema...\n")
    success_count = 0
    error_count = 0

    for desc, sql in STATEMENTS:
        print(f"  {desc}...", end=" ")
        try:
            cur.execute(sql)
            print("OK")
            success_count += 1
        except Exception as e:
            print(f"ERROR: {e}")
            error_count += 1

    print(f"\nSchema execution complete! {success_count} succeeded, {error_count} errors")

    # Verify subscriptions
    cur.execute("SELECT COUNT(*) FROM public.subscriptions;")
    print(f"Subscription rows: {cur.fetchone()[0]}")

    cur.close()
    conn.close()
    print("\nConnection closed.")


if __name__ == '__main__':
    main()
