"""Tests for bearer-token authentication."""

from unittest.mock import MagicMock, patch

import pytest
from flask import Flask

import auth
from billing.errors import AuthenticationError
from conftest import make_token

app = Flask(__name__)


def test_valid_jwt():
    with app.test_request_context(headers={'Authorization': f'Bearer {make_token()}'}):
        assert auth.authenticate_request() == {'user_id': 'user-1', 'email': 'user@example.com'}


def test_missing_header():
    with app.test_request_context():
        with pytest.raises(AuthenticationError, match='No authorization header provided'):
            auth.authenticate_request()


def test_wrong_secret():
    token = make_token(secret='not-the-secret')
    with app.test_request_context(headers={'Authorization': f'Bearer {token}'}):
        with pytest.raises(AuthenticationError, match='Invalid token'):
            auth.authenticate_request()


def test_falls_back_to_supabase_user_endpoint(monkeypatch):
    monkeypatch.delenv('SUPABASE_JWT_SECRET')
    monkeypatch.setattr(auth, 'SUPABASE_URL', 'https://project.supabase.co')
    response = MagicMock(status_code=200)
    response.json.return_value = {'id': 'user-9', 'email': 'nine@example.com'}

    with patch('auth.requests.get', return_value=response) as get:
        with app.test_request_context(headers={'Authorization': 'Bearer opaque'}):
            assert auth.authenticate_request() == {'user_id': 'user-9', 'email': 'nine@example.com'}

    assert get.call_args.args[0] == 'https://project.supabase.co/auth/v1/user'
    assert get.call_args.kwargs['headers']['Authorization'] == 'Bearer opaque'


def test_rejected_by_supabase(monkeypatch):
    monkeypatch.delenv('SUPABASE_JWT_SECRET')
    monkeypatch.setattr(auth, 'SUPABASE_URL', 'https://project.supabase.co')
    with patch('auth.requests.get', return_value=MagicMock(status_code=401)):
        with app.test_request_context(headers={'Authorization': 'Bearer opaque'}):
            with pytest.raises(AuthenticationError):
                auth.authenticate_request()
