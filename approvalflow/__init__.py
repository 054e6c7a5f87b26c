"""
Approval Flow
Flask Application Factory.

Usage:
    from approvalflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import json
import logging
import os

import click
from flask import Flask
from flask_migrate import Migrate

from approvalflow.config import config
from approvalflow.models import db
from approvalflow.middleware.logging_config import configure_logging

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    if config_name == "production":
        config[config_name]()  # fails fast without DATABASE_URL

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from approvalflow.models import directory as _directory_models        # noqa: F401
    from approvalflow.models import workflow as _workflow_models          # noqa: F401
    from approvalflow.models import request as _request_models            # noqa: F401
    from approvalflow.models import notification as _notification_models  # noqa: F401

    # ── Event sinks ──────────────────────────────────────────────────────
    from approvalflow.services.event_service import init_event_sinks
    init_event_sinks(app)

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in \
            app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    _register_cli(app)

    logger.info("Approval Flow app created (config=%s)", config_name)
    return app


def _register_cli(app):
    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("load-chain")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    @click.option("--activate", is_flag=True, help="Activate the chain after loading it.")
    @click.option("--created-by", default=None, help="User id recorded as the chain's author.")
    def load_chain_cmd(path, activate, created_by):
        """Load a workflow chain definition from a JSON file."""
        from approvalflow.core.exceptions import ConfigurationError
        from approvalflow.services.workflow_config_service import load_chain_file

        try:
            chain = load_chain_file(path, activate=activate, created_by=created_by)
        except ConfigurationError as exc:
            for problem in exc.problems or [str(exc)]:
                click.echo(f"  - {problem}", err=True)
            raise click.ClickException(f"Chain definition in {path} is invalid")
        click.echo(
            f"Loaded chain {chain.id} '{chain.name}' v{chain.version} "
            f"({chain.section_count} sections, status={chain.status})"
        )

    @app.cli.command("stalled-requests")
    @click.option("--json", "as_json", is_flag=True, help="Print the list as JSON.")
    def stalled_requests_cmd(as_json):
        """List requests nobody is currently able to move forward."""
        from approvalflow.services.progress_service import get_stalled_requests

        stalled = get_stalled_requests()
        if as_json:
            click.echo(json.dumps(stalled, indent=2))
            return
        if not stalled:
            click.echo("No stalled requests.")
            return
        for item in stalled:
            step = f" step {item['step_number']}" if item["step_number"] is not None else ""
            click.echo(
                f"{item['request_id']}  section {item['section_order']}{step}  "
                f"{item['reason']}  waiting_on={item['waiting_on']}"
            )
