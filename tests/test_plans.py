"""Tests for the plan catalog and price lookup."""

import pytest

from billing.errors import ConfigurationError
from billing.plans import (
    resolve_plan_key,
    early_bird_price,
    find_price,
    tier_for_price,
    is_early_bird_price,
    promo_code_for,
    billing_cycle_for,
    period_for_plan_name,
    tier_for_plan_name,
)


class TestResolvePlanKey:

    def test_current_key(self):
        entry = resolve_plan_key('growth_annual')
        assert entry['price_id'] == 'price_growth_annual'
        assert entry['tier'] == 'growth'
        assert entry['early_bird'] is False

    def test_legacy_basic_key(self):
        entry = resolve_plan_key('basic_annual_eb')
        assert entry['tier'] == 'essential'
        assert entry['early_bird'] is True
        assert entry['price_id'] == 'price_essential_annual_eb'

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match='Invalid plan: platinum'):
            resolve_plan_key('platinum')

    def test_unconfigured_price(self, monkeypatch):
        monkeypatch.delenv('PRICE_PRO_28D')
        with pytest.raises(ConfigurationError):
            resolve_plan_key('pro_28d')

    def test_legacy_environment_variable(self, monkeypatch):
        monkeypatch.delenv('PRICE_ESSENTIAL_28D')
        monkeypatch.setenv('PRICE_BASIC_28D', 'price_basic_legacy')
        assert resolve_plan_key('basic_28d')['price_id'] == 'price_basic_legacy'


def test_early_bird_price_for_tier():
    assert early_bird_price('growth')['price_id'] == 'price_growth_annual_eb'
    assert early_bird_price('basic')['price_id'] == 'price_essential_annual_eb'


def test_early_bird_price_missing_for_lifetime():
    with pytest.raises(ConfigurationError):
        early_bird_price('lifetime')


def test_tier_for_price():
    assert tier_for_price('price_growth_28d') == 'growth'
    assert tier_for_price('price_lifetime_oneoff') == 'lifetime'
    assert tier_for_price('price_from_the_future') == 'essential'
    assert tier_for_price(None) == 'essential'


def test_find_price_and_early_bird_flag():
    assert find_price('price_pro_annual')['plan'] == 'pro_annual'
    assert find_price('') is None
    assert is_early_bird_price('price_growth_annual_eb') is True
    assert is_early_bird_price('price_growth_annual') is False


def test_promo_code(monkeypatch):
    assert promo_code_for('essential') is None
    monkeypatch.setenv('PROMO_EARLY_BIRD_ESSENTIAL_ANNUAL_CODE', 'promo_1')
    assert promo_code_for('essential') == 'promo_1'


def test_promo_code_falls_back_to_basic_variable(monkeypatch):
    monkeypatch.setenv('PROMO_EARLY_BIRD_BASIC_ANNUAL_CODE', 'promo_basic')
    assert promo_code_for('essential') == 'promo_basic'
    assert promo_code_for('growth') is None
    monkeypatch.setenv('PROMO_EARLY_BIRD_ESSENTIAL_ANNUAL_CODE', 'promo_essential')
    assert promo_code_for('essential') == 'promo_essential'


@pytest.mark.parametrize('name,cycle,tier', [
    ('Essential 28d', '28d', 'essential'),
    ('Growth Annual', 'annual', 'growth'),
    ('Growth Annual Early Bird', 'annual', 'growth'),
    ('Pro Monthly', 'monthly', 'pro'),
    ('Lifetime', 'one_time', 'lifetime'),
    ('Ultimate', 'monthly', 'lifetime'),
    ('Essential Promo Annual', 'annual', 'essential'),
    ('Professional', 'monthly', 'essential'),
])
def test_catalog_name_parsing(name, cycle, tier):
    assert billing_cycle_for(name) == cycle
    assert tier_for_plan_name(name) == tier


@pytest.mark.parametrize('name,period', [
    ('Lifetime', 'lifetime'),
    ('Growth Annual', 'annual'),
    ('Pro 28d', '28d'),
])
def test_plan_name_period_matches_price_table(name, period):
    assert period_for_plan_name(name) == period
