#!/usr/bin/env python3
"""
RFQ Intake — Application Entry Point
Creates the Flask app and registers the intake API Blueprint.
"""

import os
import logging
from flask import Flask

from logging_config import setup_logging


def create_app(context=None):
    """Application factory.

    context: a PipelineContext to serve with (tests pass their own);
    default is one built from the environment.
    """
    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY", "rfq-intake")

    if context is None:
        from src.core.config import load_settings
        from src.core.paths import ensure_dirs
        from src.auto.pipeline import PipelineContext
        ensure_dirs()
        context = PipelineContext.from_settings(load_settings())
    app.config["PIPELINE_CONTEXT"] = context

    from src.api.routes import bp
    app.register_blueprint(bp)

    logging.getLogger("rfq").info(
        "App ready: llm_mode=%s fallback=%s",
        context.settings.llm_mode, type(context.fallback).__name__)
    return app


if __name__ == "__main__":
    setup_logging()
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port, debug=False)
