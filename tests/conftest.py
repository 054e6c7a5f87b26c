"""
Shared pytest fixtures for the Approval Flow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - directory: Operations / Finance business units with role holders
    - make_chain: Factory building (and activating) a chain from short section specs
    - new_request: Factory opening a DRAFT request for the default initiator
"""

from types import SimpleNamespace

import pytest

from approvalflow import create_app
from approvalflow.models import db as _db
from approvalflow.services import advancement_engine as engine
from approvalflow.services import role_resolver, workflow_config_service
from approvalflow.services.event_service import init_event_sinks


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Sinks and the form validator live on app.extensions; reset them so
        # one test's registrations never leak into the next.
        init_event_sinks(app)
        app.extensions.pop("approvalflow.form_validator", None)
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def cli_runner(app):
    """Flask CLI runner."""
    return app.test_cli_runner()


# ── Directory ────────────────────────────────────────────────────────────

# user id → roles held; every one of them is a member of Operations
OPERATIONS_PEOPLE = {
    "ivan": ("Initiator",),
    "alice": ("A",),
    "bob": ("B",),
    "carol": ("C",),
    "sam": ("Successor",),
}


@pytest.fixture()
def directory():
    """
    Operations BU: ivan (Initiator), alice (A), bob (B), carol (C), sam (Successor).
    Finance BU: fred holds B but is not a member of Operations.
    olga holds the organization-wide Auditor role and belongs to no BU.
    """
    ops = role_resolver.ensure_business_unit("Operations")
    finance = role_resolver.ensure_business_unit("Finance")
    roles = {
        name: role_resolver.create_role(name)
        for name in ("Initiator", "A", "B", "C", "Successor", "Backup")
    }
    roles["Auditor"] = role_resolver.create_role("Auditor", scope="ORGANIZATION")

    for user_id, held in OPERATIONS_PEOPLE.items():
        for role_name in held:
            role_resolver.assign_role(user_id, roles[role_name])
        role_resolver.add_member(user_id, ops.id)

    role_resolver.assign_role("fred", roles["B"])
    role_resolver.add_member("fred", finance.id)
    role_resolver.assign_role("olga", roles["Auditor"])
    _db.session.commit()
    return SimpleNamespace(bu=ops, other_bu=finance, roles=roles)


def _section_definition(order, spec):
    kind = spec.get("kind", "APPROVAL")
    definition = {
        "order": order,
        "kind": kind,
        "name": spec.get("name", f"{kind.title()} {order}"),
        "initiator_roles": list(spec.get("initiators", ())),
        "hard_fork": spec.get("hard_fork", False),
    }
    if kind == "APPROVAL":
        definition["steps"] = [
            {"step_number": number, "approver_role": role}
            for number, role in enumerate(spec.get("steps", ()), start=1)
        ]
    return definition


@pytest.fixture()
def make_chain(directory):
    """
    Build a chain from short section specs, e.g.::

        make_chain({"steps": ["A"]}, {"steps": ["B", "C"], "initiators": ["Successor"]})
    """
    def _make(*sections, name="Two-section chain", activate=True):
        definition = {
            "name": name,
            "sections": [_section_definition(order, spec) for order, spec in enumerate(sections)],
        }
        chain = workflow_config_service.create_chain(definition, created_by="tests")
        if activate:
            chain = workflow_config_service.activate_chain(chain.id)
        return chain

    return _make


@pytest.fixture()
def new_request(directory):
    """Open a DRAFT request on ``chain`` for ivan in Operations."""
    def _new(chain, initiator_id="ivan", data=None):
        return engine.create_request(chain.id, directory.bu.id, initiator_id, data=data or {"amount": 100})

    return _new
