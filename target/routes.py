"""
Demo target routes.

Endpoints:
    GET    /health                  - Health check (never faulted)
    GET    /posts                   - List posts (``?userId=`` filter)
    GET    /posts/<id>              - One post
    GET    /posts/<id>/comments     - Comments of a post
    POST   /posts                   - Create a post (201, echoes payload with id)
    PUT    /posts/<id>              - Replace a post (echo)
    DELETE /posts/<id>              - Delete a post (200, empty object)
    GET    /comments                - List comments (``?postId=`` filter)
    GET    /users/<id>              - One user
    GET    /delay/<seconds>         - Respond after a delay (timeout tests)

Every route except ``/health`` passes through the fault injector, which
adds ``LATENCY_MS`` and answers 500 on every ``FAIL_EVERY``-th request.
"""

from __future__ import annotations

import logging
import time

from flask import Blueprint, Response, current_app, jsonify, request

from target.store import Store

logger = logging.getLogger(__name__)

target_bp = Blueprint("target", __name__)


def _store() -> Store:
    return current_app.extensions["target_store"]


@target_bp.before_request
def inject_faults() -> tuple[Response, int] | None:
    """Apply configured latency and deterministic failures."""
    if request.endpoint == "target.health_check":
        return None
    number = _store().next_request_number()
    latency_ms = current_app.config.get("LATENCY_MS", 0)
    if latency_ms:
        time.sleep(latency_ms / 1000.0)
    fail_every = current_app.config.get("FAIL_EVERY", 0)
    if fail_every and number % fail_every == 0:
        logger.debug("Injecting failure on request %d", number)
        return jsonify({"error": "injected failure", "request": number}), 500
    return None


@target_bp.route("/health", methods=["GET"])
def health_check() -> tuple[Response, int]:
    return jsonify({"status": "healthy", "requests": _store().request_count}), 200


@target_bp.route("/posts", methods=["GET"])
def list_posts() -> tuple[Response, int]:
    posts = _store().posts
    user_id = request.args.get("userId", type=int)
    if user_id is not None:
        posts = [post for post in posts if post["userId"] == user_id]
    return jsonify(posts), 200


@target_bp.route("/posts/<int:post_id>", methods=["GET"])
def get_post(post_id: int) -> tuple[Response, int]:
    post = _store().post(post_id)
    if post is None:
        return jsonify({}), 404
    return jsonify(post), 200


@target_bp.route("/posts/<int:post_id>/comments", methods=["GET"])
def post_comments(post_id: int) -> tuple[Response, int]:
    return jsonify(_store().comments_for(post_id)), 200


@target_bp.route("/posts", methods=["POST"])
def create_post() -> tuple[Response, int]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    return jsonify(_store().create_post(data)), 201


@target_bp.route("/posts/<int:post_id>", methods=["PUT"])
def replace_post(post_id: int) -> tuple[Response, int]:
    if _store().post(post_id) is None:
        return jsonify({}), 404
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    return jsonify({**data, "id": post_id}), 200


@target_bp.route("/posts/<int:post_id>", methods=["DELETE"])
def delete_post(post_id: int) -> tuple[Response, int]:
    return jsonify({}), 200


@target_bp.route("/comments", methods=["GET"])
def list_comments() -> tuple[Response, int]:
    post_id = request.args.get("postId", type=int)
    if post_id is None:
        return jsonify(_store().comments), 200
    return jsonify(_store().comments_for(post_id)), 200


@target_bp.route("/users/<int:user_id>", methods=["GET"])
def get_user(user_id: int) -> tuple[Response, int]:
    user = _store().user(user_id)
    if user is None:
        return jsonify({}), 404
    return jsonify(user), 200


@target_bp.route("/delay/<float:seconds>", methods=["GET"])
@target_bp.route("/delay/<int:seconds>", methods=["GET"])
def delayed(seconds: float) -> tuple[Response, int]:
    seconds = min(float(seconds), current_app.config["MAX_DELAY_SECONDS"])
    time.sleep(seconds)
    return jsonify({"delayed": seconds}), 200
