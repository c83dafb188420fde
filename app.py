#!/usr/bin/env python3
"""
Fortune Magnet Billing API
Stripe checkout, customer portal and webhook reconciliation over the
Supabase Postgres database.
"""

import os
import sys
import psycopg2
import psycopg2.extras
from flask import Flask, jsonify, g
from flask_cors import CORS

app = Flask(__name__)
CORS(app)

# Supabase Postgres connection string
DATABASE_URL = os.environ.get('DATABASE_URL')

# Startup logging for debugging
print(f"[STARTUP] DATABASE_URL set: {bool(DATABASE_URL)}", file=sys.stderr)
if DATABASE_URL:
    # Log host only (hide password)
    from urllib.parse import urlparse
    parsed = urlparse(DATABASE_URL)
    print(f"[STARTUP] Database host: {parsed.hostname}:{parsed.port}", file=sys.stderr)


def get_db():
    """Get database connection for current request context."""
    if 'db' not in g:
        if not DATABASE_URL:
            raise Exception("DATABASE_URL environment variable not set")
        # Add connection timeout to prevent hanging
        g.db = psycopg2.connect(DATABASE_URL, connect_timeout=10)
        g.db.autocommit = False
    return g.db


def get_cursor():
    """Get a cursor with dict-like row access."""
    db = get_db()
    return db.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


@app.teardown_appcontext
def close_db(exception):
    """Close database connection at end of request."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


@app.route('/health', methods=['GET'])
def health():
    return jsonify({
        'status': 'ok',
        'service': 'fortune-magnet-billing',
        'database_configured': bool(DATABASE_URL)
    })


# =============================================================================
# BILLING & STRIPE WEBHOOKS
# =============================================================================

from billing.stripe_handler import billing_bp
app.register_blueprint(billing_bp)


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=False)
