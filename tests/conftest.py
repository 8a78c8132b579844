# =====================================================================
# Actuator Pytest Configuration and Fixtures
# =====================================================================
# This file contains shared fixtures and configuration for all tests
# =====================================================================

import pytest
from unittest.mock import Mock
from prometheus_client import REGISTRY

from actuator.models import Alert, WebhookPayload


# --- Prometheus Metrics Cleanup ---

@pytest.fixture(autouse=True, scope="function")
def cleanup_flask_exporter_metrics():
    """
    Remove the HTTP metrics registered by PrometheusMetrics after each test.

    Every create_app() call registers the flask_* collectors again, which
    raises 'Duplicated timeseries in CollectorRegistry' on the next app.
    Module-level actuator_* metrics are registered once and kept.
    """
    yield

    collectors_to_remove = []
    for collector in list(REGISTRY._collector_to_names.keys()):
        try:
            names = REGISTRY._collector_to_names.get(collector, set())
            if any(name.startswith('flask_') for name in names):
                collectors_to_remove.append(collector)
        except Exception:
            pass

    for collector in collectors_to_remove:
        try:
            REGISTRY.unregister(collector)
        except Exception:
            pass


# --- Reactions ---

class RecordingReaction:
    """Reaction that records every alert it sees, optionally failing."""

    def __init__(self, name, calls=None, fail=False):
        self.name = name
        self.calls = calls if calls is not None else []
        self.fail = fail
        self.alerts = []

    def act_on(self, alert):
        self.alerts.append(alert)
        self.calls.append((self.name, alert.fingerprint))
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")


@pytest.fixture
def calls():
    """Shared invocation log: (reaction name, alert fingerprint) tuples"""
    return []


@pytest.fixture
def make_reaction(calls):
    """Factory for recording reactions that share the calls log"""
    def _make(name, fail=False):
        return RecordingReaction(name, calls=calls, fail=fail)
    return _make


@pytest.fixture
def mock_events():
    """Mock event sink"""
    return Mock()


# --- Sample Data Fixtures ---

@pytest.fixture
def sample_alert_dict():
    """Sample Alertmanager alert"""
    return {
        "status": "firing",
        "labels": {
            "alertname": "HighErrorRate",
            "instance": "web-01:9100",
            "site": "west",
        },
        "annotations": {
            "summary": "Error rate above 5%",
            "runbook": "https://runbooks.example.com/high-error-rate",
        },
        "startsAt": "2025-11-08T12:00:00.123456789Z",
        "endsAt": "0001-01-01T00:00:00Z",
        "generatorURL": "http://prometheus.example.com/graph?g0.expr=errors",
        "fingerprint": "a1b2c3d4e5f60718",
    }


@pytest.fixture
def sample_payload_dict(sample_alert_dict):
    """Sample Alertmanager webhook payload (version 4) with two alerts"""
    second = dict(sample_alert_dict)
    second["labels"] = {"alertname": "HighErrorRate", "instance": "web-02:9100", "site": "east"}
    second["fingerprint"] = "0f1e2d3c4b5a6978"
    return {
        "version": "4",
        "groupKey": "{}:{alertname=\"HighErrorRate\"}",
        "truncatedAlerts": 0,
        "status": "firing",
        "receiver": "actuator",
        "groupLabels": {"alertname": "HighErrorRate"},
        "commonLabels": {"alertname": "HighErrorRate", "severity": "critical"},
        "commonAnnotations": {"summary": "Error rate above 5%"},
        "externalURL": "http://alertmanager.example.com",
        "alerts": [sample_alert_dict, second],
    }


def make_payload(*alerts, common=None, group=None):
    """Build a payload from (fingerprint, labels) pairs"""
    return WebhookPayload(
        version="4",
        alerts=tuple(
            Alert(status="firing", labels=labels, fingerprint=fingerprint)
            for fingerprint, labels in alerts
        ),
        common_labels=common or {},
        group_labels=group or {},
    )


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (real subprocesses)"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.getMessage():
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
