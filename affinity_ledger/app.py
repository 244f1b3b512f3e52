"""Flask application entry point for the affinity ledger."""

from __future__ import annotations

import atexit

from flask import Flask

from .api.routes import create_blueprint
from .bootstrap import bootstrap_pipeline
from .config import AppConfig


def create_app(config: AppConfig | None = None, start_background: bool = True) -> Flask:
    ctx = bootstrap_pipeline(config=config, start_background=start_background)
    app = Flask(__name__)
    app.config["LEDGER_CONFIG"] = ctx.config
    app.extensions["affinity_ledger"] = ctx
    app.register_blueprint(create_blueprint(ctx.pipeline, ctx.telemetry), url_prefix="/api")
    atexit.register(ctx.scheduler.stop)
    atexit.register(ctx.telemetry.stop)
    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=8060)
