import os
import logging
import sqlite3

import click
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase
from werkzeug.middleware.proxy_fix import ProxyFix

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

class Base(DeclarativeBase):
    pass

# Initialize Flask app
app = Flask(__name__)
app.secret_key = os.environ.get("SESSION_SECRET")
if not app.secret_key:
    raise RuntimeError("SESSION_SECRET environment variable is required and cannot be empty")
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

# The database is the device-local progress cache; a SQLite file next to the app by default
database_url = os.environ.get("DATABASE_URL")
if database_url:
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://')
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
else:
    app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///field_progress.db"
    logging.warning("DATABASE_URL not found, using SQLite progress store field_progress.db")

app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True}
else:
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_size": 5,
        "max_overflow": 5,
        "pool_timeout": 30,
    }


@event.listens_for(Engine, "connect")
def _sqlite_durability(dbapi_connection, connection_record):
    """Every local write must survive a crash or a dead battery"""
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


db = SQLAlchemy(model_class=Base)
db.init_app(app)

with app.app_context():
    try:
        import models  # noqa: F401

        db.create_all()
        logging.info("Progress store tables created if they didn't exist")
    except Exception as e:
        # The engine keeps working against the server alone when local storage is unavailable
        logging.error(f"Error during progress store initialization: {str(e)}")
        logging.exception("Progress store initialization error details:")


# CLI commands for the local progress store
@app.cli.command("progress-report")
@click.option("--kind", type=click.Choice(["visit", "transfer"]), default=None)
def progress_report(kind):
    """List cached work that has not been finalized yet"""
    from progress_store import ProgressStore
    pending = ProgressStore().pending_units(kind)
    if not pending:
        click.echo("No pending local progress")
        return
    for unit in pending:
        click.echo(
            f"{unit['unit_kind']:<9} {unit['unit_id']:<24} completed={unit['completed']} "
            f"skipped={unit['skipped']} media={unit['media']} updated={unit['updated_at']}"
        )


@app.cli.command("prune-events")
@click.option("--days", default=30, show_default=True, help="Keep events newer than this many days")
def prune_events(days):
    """Delete old entries from the local field event journal"""
    from progress_store import ProgressStore
    removed = ProgressStore().prune_events(days)
    click.echo(f"Removed {removed} event(s)")
