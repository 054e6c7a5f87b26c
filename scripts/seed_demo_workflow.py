#!/usr/bin/env python3
"""
Approval Flow — Demo Workflow Seed.

Creates the demo directory (business units, roles, people), loads and
activates the Purchase Request chain, then drives one request through the
first two sections so the purchase-order section is waiting to be claimed
by one of the two procurement officers.

Usage:
    python scripts/seed_demo_workflow.py              # Reset DB + seed
    python scripts/seed_demo_workflow.py --no-reset   # Keep existing data
    python scripts/seed_demo_workflow.py --no-run     # Directory + chain only
"""

import argparse
import sys

sys.path.insert(0, ".")

from approvalflow import create_app
from approvalflow.models import db
from approvalflow.services import advancement_engine as engine
from approvalflow.services import role_resolver
from approvalflow.services.progress_service import get_request_chain, get_workflow_progress
from approvalflow.services.workflow_config_service import load_chain_file
from scripts.seed_data.directory import BUSINESS_UNITS, PEOPLE, ROLES

CHAIN_FILE = "scripts/seed_data/demo_chain.json"


# ═══════════════════════════════════════════════════════════════════════════
# 1. DIRECTORY
# ═══════════════════════════════════════════════════════════════════════════

def seed_directory():
    units = {name: role_resolver.ensure_business_unit(name) for name in BUSINESS_UNITS}
    roles = {}
    for name, scope in ROLES:
        roles[name] = role_resolver.create_role(name, scope=scope)
    for user_id, role_name, unit_names in PEOPLE:
        role_resolver.assign_role(user_id, roles[role_name])
        for unit_name in unit_names:
            role_resolver.add_member(user_id, units[unit_name].id)
    db.session.commit()
    print(f"  ✅ {len(units)} business units, {len(roles)} roles, {len(PEOPLE)} people")
    return units


# ═══════════════════════════════════════════════════════════════════════════
# 2. CHAIN + SAMPLE REQUEST
# ═══════════════════════════════════════════════════════════════════════════

def seed_chain():
    chain = load_chain_file(CHAIN_FILE, activate=True, created_by="seed")
    print(f"  ✅ Chain {chain.id} '{chain.name}' ({chain.section_count} sections, {chain.status})")
    return chain


def run_sample_request(chain, unit):
    req = engine.create_request(
        chain.id, unit.id, "usr-101",
        data={"item": "Laboratory centrifuge", "quantity": 2, "estimated_cost": 18400},
    )
    req = engine.submit_request(req.id, "usr-101")
    req = engine.act(req.id, "usr-102", "APPROVE", comment="Within the Q3 budget")
    req = engine.act(req.id, "usr-103", "APPROVE")

    chain_view = get_request_chain(req.id)
    child_id = chain_view[-1]["request_id"]
    progress = get_workflow_progress(child_id)
    print(f"  ✅ Request {req.id} → {req.status} (handed off={req.is_handed_off})")
    print(f"     child {child_id}: section {progress['current_section']}, "
          f"awaiting claim={progress['awaiting_claim']}")


def main():
    parser = argparse.ArgumentParser(description="Demo Workflow Seed")
    parser.add_argument("--no-reset", action="store_true", help="Don't clear existing data")
    parser.add_argument("--no-run", action="store_true", help="Skip the sample request")
    args = parser.parse_args()

    app = create_app()
    print(f"  🎯 DB: {app.config['SQLALCHEMY_DATABASE_URI']}\n")

    with app.app_context():
        if not args.no_reset:
            db.drop_all()
            db.create_all()
        units = seed_directory()
        chain = seed_chain()
        if not args.no_run:
            run_sample_request(chain, units["Operations"])
    print("\n  Done.")


if __name__ == "__main__":
    main()
