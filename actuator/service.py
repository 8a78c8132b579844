#!/usr/bin/env python3
"""
=====================================================================
Actuator Webhook Service
=====================================================================
HTTP front end for the dispatcher. Alertmanager posts webhook payloads
(version 4) to one of the configured handler paths; each handler owns a
plan of label rules and the dispatcher that runs them.

Key Features:
- One POST endpoint per handler in the rule file
- Optional per-handler token (Bearer or X-API-KEY), constant-time compare
- Content-Type, JSON and payload version validation before dispatch
- Correlation IDs in logs and responses
- Optional per-payload dispatch deadline
- Prometheus metrics at /metrics, health check at /health

Production:
    gunicorn --bind 0.0.0.0:9942 --workers 4 'actuator.service:create_app()'
=====================================================================
"""

import logging
import secrets as secrets_module
import signal
import sys
import threading
import uuid
from typing import List, Optional

from flask import Flask, g, jsonify, request
from prometheus_client import Counter, Histogram
from prometheus_flask_exporter import PrometheusMetrics

from actuator import __version__
from actuator.config import Config, Handler, load_rule_file
from actuator.errors import PayloadValidationError
from actuator.models import WebhookPayload

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_WEBHOOK_TOTAL = Counter(
    'actuator_webhook_requests_received_total',
    'Total webhook deliveries received',
    ['handler', 'status', 'reason']  # status: success|partial|fail, reason: auth|content_type|json|validation|unknown|''
)

METRIC_WEBHOOK_LATENCY = Histogram(
    'actuator_webhook_latency_seconds',
    'Webhook request processing latency, reactions included',
    ['handler'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

PUBLIC_PATHS = ('/health', '/metrics')


def _error(message: str, status: int):
    return jsonify({
        "status": "error",
        "message": message,
        "correlation_id": g.get("correlation_id", "system"),
    }), status


def _presented_token() -> str:
    auth = request.headers.get('Authorization', '')
    if auth[:7].lower() == 'bearer ':
        return auth[7:].strip()
    return request.headers.get('X-API-KEY', '')


def _make_webhook_view(app: Flask, handler: Handler):
    """Build the POST view for one handler."""

    def handle_webhook():
        config: Config = app.config["CONFIG"]
        path = handler.path

        with METRIC_WEBHOOK_LATENCY.labels(handler=path).time():
            # --------------------------------------------------------
            # STEP 1: Authenticate
            # --------------------------------------------------------
            if handler.token:
                presented = _presented_token()
                if not presented or not secrets_module.compare_digest(presented, handler.token):
                    logger.warning(f"Authentication failed on {path} from {request.remote_addr}")
                    METRIC_WEBHOOK_TOTAL.labels(handler=path, status='fail', reason='auth').inc()
                    return _error("Unauthorized", 401)

            # --------------------------------------------------------
            # STEP 2: Content-Type
            # --------------------------------------------------------
            content_type = request.headers.get('Content-Type', '')
            if not content_type.startswith('application/json'):
                logger.warning(f"Got unexpected Content-Type {content_type!r} from {request.remote_addr}")
                METRIC_WEBHOOK_TOTAL.labels(handler=path, status='fail', reason='content_type').inc()
                return _error(f"Not sure what to do with Content-Type {content_type!r}", 400)

            # --------------------------------------------------------
            # STEP 3: Parse and validate payload
            # --------------------------------------------------------
            data = request.get_json(silent=True)
            if data is None:
                logger.warning(f"Failed receiving payload from {request.remote_addr}: invalid JSON")
                METRIC_WEBHOOK_TOTAL.labels(handler=path, status='fail', reason='json').inc()
                return _error("Invalid JSON payload", 400)

            try:
                payload = WebhookPayload.from_dict(data)
            except PayloadValidationError as e:
                logger.warning(f"Rejected payload from {request.remote_addr}: {e}")
                METRIC_WEBHOOK_TOTAL.labels(handler=path, status='fail', reason='validation').inc()
                return _error(f"Invalid payload: {e}", 400)

            # --------------------------------------------------------
            # STEP 4: Dispatch
            # --------------------------------------------------------
            cancel_event = None
            timer = None
            if config.DISPATCH_TIMEOUT > 0:
                cancel_event = threading.Event()
                timer = threading.Timer(config.DISPATCH_TIMEOUT, cancel_event.set)
                timer.daemon = True
                timer.start()

            try:
                report = handler.dispatcher.handle_payload(payload, cancel_event=cancel_event)
            except Exception as e:
                logger.error(f"Unhandled exception while dispatching: {e}", exc_info=True)
                METRIC_WEBHOOK_TOTAL.labels(handler=path, status='fail', reason='unknown').inc()
                return _error("Internal server error", 500)
            finally:
                if timer is not None:
                    timer.cancel()

            if report.error is not None:
                logger.warning(f"Errors while processing: {report.error}")
                METRIC_WEBHOOK_TOTAL.labels(handler=path, status='partial', reason='').inc()
                status = "partial_failure"
            else:
                METRIC_WEBHOOK_TOTAL.labels(handler=path, status='success', reason='').inc()
                status = "ok"

            body = {"status": status, "correlation_id": g.correlation_id}
            body.update(report.to_dict())
            return jsonify(body), 200

    handle_webhook.__name__ = f"handle_webhook_{len(app.config['HANDLERS'])}"
    return handle_webhook


# =====================================================================
# FLASK APPLICATION FACTORY
# =====================================================================

def create_app(config: Optional[Config] = None, handlers: Optional[List[Handler]] = None) -> Flask:
    """
    Create and configure the Flask application.

    Without arguments, configuration comes from the environment and the
    handlers from the rule file it names. Raises ConfigError on bad
    configuration.
    """
    app = Flask(__name__)

    if config is None:
        config = Config()
    app.config["CONFIG"] = config
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_PAYLOAD_BYTES

    if handlers is None:
        handlers = load_rule_file(config.CONFIG_FILE, config=config)

    app.config["HANDLERS"] = []
    for handler in handlers:
        if handler.path in PUBLIC_PATHS:
            logger.warning(f"Handler path {handler.path} shadows a built-in endpoint")
        view = _make_webhook_view(app, handler)
        app.add_url_rule(handler.path, endpoint=view.__name__, view_func=view, methods=['POST'])
        app.config["HANDLERS"].append(handler)

    PrometheusMetrics(app)
    logger.info("Prometheus metrics endpoint initialized at /metrics")

    # ================================================================
    # REQUEST HANDLERS
    # ================================================================

    @app.before_request
    def assign_correlation_id():
        """Generate or extract the correlation ID for request tracing."""
        g.correlation_id = request.headers.get('X-Correlation-ID') or str(uuid.uuid4())

    @app.after_request
    def echo_correlation_id(response):
        response.headers['X-Correlation-ID'] = g.get("correlation_id", "system")
        return response

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint for load balancers and orchestrators."""
        return jsonify({
            "status": "healthy",
            "service": "actuator",
            "version": __version__,
            "handlers": len(app.config["HANDLERS"]),
        }), 200

    @app.route('/', methods=['GET'])
    def index():
        """Service information endpoint."""
        return jsonify({
            "service": "Actuator",
            "version": __version__,
            "description": "Runs reactions for Alertmanager alerts matching configured labels",
            "endpoints": {
                "webhooks": [
                    {
                        "path": h.path,
                        "method": "POST",
                        "auth": bool(h.token),
                        "rules": len(h.plan.rules),
                    }
                    for h in app.config["HANDLERS"]
                ],
                "health": "GET /health",
                "metrics": "GET /metrics",
                "info": "GET /",
            },
        }), 200

    logger.info(f"Actuator service configured with {len(handlers)} handler(s)")
    return app


# =====================================================================
# GRACEFUL SHUTDOWN HANDLING
# =====================================================================

def setup_signal_handlers(app: Flask) -> None:
    """Set up signal handlers for graceful shutdown."""

    def shutdown_handler(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.info(f"Received {sig_name}, initiating graceful shutdown...")
        logger.info("Graceful shutdown complete")
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    logger.info("Signal handlers registered for graceful shutdown")
