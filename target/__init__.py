"""
Demo target service - application factory.

A Flask stand-in for the JSONPlaceholder endpoints the built-in load
profiles exercise (``/posts``, ``/posts/<id>/comments``, ``/users/<id>``
...), with fault injection for latency and deterministic failures.

Key Concepts Demonstrated:
- Application Factory pattern (create_app) for flexible configuration
- Blueprint registration for modular route organisation
- Per-app state kept in ``app.extensions`` rather than module globals
"""

from __future__ import annotations

import logging

from flask import Flask

from target.config import get_config
from target.store import Store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(config_name: str | None = None, **overrides) -> Flask:
    """
    Construct and configure the demo target application.

    Args:
        config_name: Optional environment key ("development", "testing",
            "production").  When *None*, ``FLASK_ENV`` is consulted.
        **overrides: Config values that win over the selected class,
            e.g. ``LATENCY_MS=50`` or ``FAIL_EVERY=3``.

    Returns:
        A configured Flask application with a fresh in-memory dataset.
    """
    app = Flask(__name__)
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    app.config.update(overrides)

    logger.info("Creating target app with config: %s", config_class.__name__)

    app.extensions["target_store"] = Store(
        post_count=app.config["POST_COUNT"],
        user_count=app.config["USER_COUNT"],
        comments_per_post=app.config["COMMENTS_PER_POST"],
    )

    from target.routes import target_bp

    app.register_blueprint(target_bp)
    return app
