"""
WSGI / Flask CLI entry point.

Usage:
    export FLASK_APP=wsgi.py
    flask db upgrade
    flask load-chain scripts/seed_data/demo_chain.json --activate
    flask stalled-requests
"""

from approvalflow import create_app

app = create_app()
