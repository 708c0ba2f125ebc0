"""Flask application factory."""

from __future__ import annotations

from flask import Flask, jsonify, request
from flask_cors import CORS

from api.routes import api_bp
from config import settings


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.flask_secret_key
    app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024  # 1 MB

    # CORS for the dashboard frontend
    CORS(app, origins=settings.cors_origins)

    # Register API blueprint
    app.register_blueprint(api_bp)

    # Health check
    @app.route("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # --- Error handlers ---

    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/"):
            return jsonify({"error": "Not found"}), 404
        return jsonify({"error": "Not found", "details": request.path}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    return app
