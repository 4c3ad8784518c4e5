"""
Health and Prometheus endpoints.
"""

from http import HTTPStatus

from flask import Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from crm_migrator.models import db


def init_monitoring(app):
    """Register the health check and, when monitoring is enabled, the metrics endpoint."""

    health_path = app.config.get("HEALTH_CHECK_ENDPOINT", "/health")
    metrics_path = app.config.get("METRICS_ENDPOINT", "/metrics")

    def health_check():
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            app.logger.error("Health check database probe failed: %s", exc)
            db.session.rollback()
            return jsonify({"status": "unhealthy", "database": "error"}), HTTPStatus.SERVICE_UNAVAILABLE
        state = app.extensions.get("migrations", {})
        return jsonify(
            {
                "status": "healthy",
                "database": "ok",
                "app": app.config.get("APP_NAME"),
                "version": app.config.get("APP_VERSION"),
                "migrations_enabled": bool(state.get("enabled")),
                "worker_enabled": bool(state.get("worker_enabled")),
            }
        )

    if "health_check" not in app.view_functions:
        app.add_url_rule(health_path, "health_check", health_check, methods=["GET"])

    if not app.config.get("MONITORING_ENABLED", False):
        return

    def metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    if "metrics" not in app.view_functions:
        app.add_url_rule(metrics_path, "metrics", metrics, methods=["GET"])
