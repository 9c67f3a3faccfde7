"""
HTTP API for the Orchestrator.

Provides REST endpoints for submitting, inspecting and cancelling trip
requests, plus status monitoring. Runs in a thread beside the
orchestrator; every call that touches coordination state is hopped onto
the orchestrator's event loop so the dispatcher stays the single writer.
"""

import asyncio
import threading
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable

from flask import Flask, jsonify, request

from shared.logging import get_logger

from .errors import PlanningError, RequestNotFound

if TYPE_CHECKING:
    from .main import Orchestrator

log = get_logger("orchestrator", "api")

# Seconds a handler waits for the event loop to apply a call
API_CALL_TIMEOUT = 10.0

# Global reference to orchestrator instance (set by start_api_thread)
_orchestrator: "Orchestrator" = None


def get_orchestrator() -> "Orchestrator":
    """Get the global orchestrator instance."""
    return _orchestrator


def set_orchestrator(orchestrator: "Orchestrator"):
    global _orchestrator
    _orchestrator = orchestrator


def require_orchestrator(f):
    """Decorator to require orchestrator to be running."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if _orchestrator is None:
            return jsonify({"error": "Orchestrator not initialized"}), 503
        if not _orchestrator.running or _orchestrator.loop is None:
            return jsonify({"error": "Orchestrator not running"}), 503
        return f(*args, **kwargs)
    return decorated


def call_on_loop(func: Callable[..., Any], *args, timeout: float = API_CALL_TIMEOUT) -> Any:
    """Run a synchronous orchestrator method on its event loop and return the result."""
    async def invoke():
        return func(*args)

    future = asyncio.run_coroutine_threadsafe(invoke(), _orchestrator.loop)
    return future.result(timeout=timeout)


def create_app() -> Flask:
    """Create Flask app for orchestrator API."""
    app = Flask(__name__)

    @app.route("/health")
    def health():
        """Health check endpoint."""
        if _orchestrator and _orchestrator.running:
            return jsonify({"status": "healthy", "running": True})
        return jsonify({"status": "starting", "running": False})

    @app.route("/status")
    @require_orchestrator
    def status():
        """Get full orchestrator status."""
        return jsonify(call_on_loop(_orchestrator.get_system_status))

    @app.route("/pools")
    @require_orchestrator
    def pool_status():
        """Get slot occupancy per agent type."""
        return jsonify(call_on_loop(_orchestrator.allocator.get_status))

    @app.route("/requests", methods=["POST"])
    @require_orchestrator
    def submit_request():
        """Plan and dispatch a structured trip request."""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "JSON object required"}), 400

        try:
            request_id = call_on_loop(_orchestrator.submit_request, data)
        except PlanningError as e:
            log.info("api.request_rejected", error=str(e))
            return jsonify({"error": str(e), "error_class": "PlanningError"}), 400

        log.info("api.request_submitted", request_id=request_id)
        return jsonify({"request_id": request_id}), 202

    @app.route("/requests/<request_id>")
    @require_orchestrator
    def get_request(request_id: str):
        """Graph state and partial results of a request."""
        try:
            return jsonify(call_on_loop(_orchestrator.get_status, request_id))
        except RequestNotFound:
            return jsonify({"error": "Request not found"}), 404

    @app.route("/requests/<request_id>/outcome")
    @require_orchestrator
    def get_outcome(request_id: str):
        """Merged outcome, or 202 while the request is still running."""
        try:
            outcome = call_on_loop(_orchestrator.get_outcome, request_id)
        except RequestNotFound:
            return jsonify({"error": "Request not found"}), 404

        if outcome is None:
            return jsonify({"request_id": request_id, "finished": False}), 202
        return jsonify(outcome.to_dict())

    @app.route("/requests/<request_id>/cancel", methods=["POST"])
    @require_orchestrator
    def cancel_request(request_id: str):
        """Cancel every unfinished task of a request."""
        try:
            cancelled = call_on_loop(_orchestrator.cancel_request, request_id)
        except RequestNotFound:
            return jsonify({"error": "Request not found"}), 404

        log.info("api.request_cancelled", request_id=request_id, cancelled=cancelled)
        return jsonify({"request_id": request_id, "cancelled": cancelled})

    return app


def run_api_server(host: str = "127.0.0.1", port: int = 9001):
    """Run the Flask API server (blocking)."""
    app = create_app()
    app.run(host=host, port=port, threaded=True, use_reloader=False)


def start_api_thread(
    orchestrator: "Orchestrator",
    host: str = "127.0.0.1",
    port: int = 9001,
) -> threading.Thread:
    """
    Serve the API for a started orchestrator from a daemon thread.
    """
    set_orchestrator(orchestrator)

    api_thread = threading.Thread(
        target=run_api_server,
        kwargs={"host": host, "port": port},
        daemon=True,
    )
    api_thread.start()
    log.info("api.server_started", host=host, port=port)
    return api_thread
