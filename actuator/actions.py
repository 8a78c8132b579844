"""
=====================================================================
Actuator - Reactions
=====================================================================
A reaction is anything that can act on a single alert. The dispatcher only
relies on the Reaction protocol, so new kinds of reaction can be added
without touching it.

Built-in reactions:
- LogAction: records the alert in the service log
- CommandAction: runs a local command (no shell) with the alert as JSON on
  stdin and ACTUATOR_ALERT_* environment variables
- WebhookAction: POSTs the alert as JSON to another HTTP endpoint
=====================================================================
"""

import json
import logging
import os
import re
import shlex
import subprocess
import time
from typing import Dict, List, Optional, Protocol, runtime_checkable

import requests
from prometheus_client import Counter, Histogram

from actuator.errors import ReactionError
from actuator.models import Alert

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_COMMAND_RUNS = Counter(
    'actuator_command_runs_total',
    'Total external command executions',
    ['action', 'status']  # status: success|exit_code|timeout|error
)

METRIC_COMMAND_LATENCY = Histogram(
    'actuator_command_duration_seconds',
    'Wall-clock time of external command executions',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

METRIC_WEBHOOK_REQUESTS = Counter(
    'actuator_webhook_requests_total',
    'Total alerts forwarded to webhook endpoints',
    ['action', 'status']  # status: success|http_error|timeout|connection|error
)

ENV_PREFIX = "ACTUATOR_ALERT_"
STDERR_PREVIEW_LENGTH = 500

_ENV_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


@runtime_checkable
class Reaction(Protocol):
    """Capability to act on one alert. Raise to signal failure."""

    def act_on(self, alert: Alert) -> None:
        ...


def reaction_name(reaction: object) -> str:
    """Human-readable name for logs and failure reports."""
    name = getattr(reaction, "name", None)
    if name:
        return str(name)
    return type(reaction).__name__


def env_name(prefix: str, key: str) -> str:
    return prefix + _ENV_UNSAFE.sub("_", key).upper()


def alert_environment(alert: Alert) -> Dict[str, str]:
    """Environment variables describing an alert for child processes."""
    env = {
        ENV_PREFIX + "STATUS": alert.status,
        ENV_PREFIX + "FINGERPRINT": alert.fingerprint,
        ENV_PREFIX + "GENERATOR_URL": alert.generator_url,
    }
    for key, value in alert.labels.items():
        env[env_name(ENV_PREFIX + "LABEL_", key)] = value
    for key, value in alert.annotations.items():
        env[env_name(ENV_PREFIX + "ANNOTATION_", key)] = value
    return env


class LogAction:
    """Log the alert and do nothing else."""

    def __init__(self, name: str = "log", level: int = logging.INFO):
        self.name = name
        self.level = level

    def act_on(self, alert: Alert) -> None:
        labels = ",".join(f"{k}={v}" for k, v in sorted(alert.labels.items()))
        logger.log(
            self.level,
            f"Action '{self.name}' observed {alert.status} alert "
            f"(fingerprint={alert.fingerprint or 'n/a'}, labels={labels})"
        )

    def __repr__(self) -> str:
        return f"LogAction(name={self.name!r})"


class CommandAction:
    """Run an external command for each alert."""

    def __init__(self, name: str, command: str, timeout: Optional[float] = 60.0):
        argv = shlex.split(command)
        if not argv:
            raise ValueError(f"action '{name}' has an empty command")
        self.name = name
        self.command = command
        self.argv: List[str] = argv
        self.timeout = timeout

    def act_on(self, alert: Alert) -> None:
        env = dict(os.environ)
        env.update(alert_environment(alert))
        stdin = json.dumps(alert.to_dict())

        start_time = time.time()
        try:
            result = subprocess.run(
                self.argv,
                input=stdin,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            METRIC_COMMAND_RUNS.labels(action=self.name, status='timeout').inc()
            raise ReactionError(f"command '{self.command}' timed out after {self.timeout}s")
        except OSError as e:
            METRIC_COMMAND_RUNS.labels(action=self.name, status='error').inc()
            raise ReactionError(f"command '{self.command}' could not be started: {e}") from e
        finally:
            METRIC_COMMAND_LATENCY.observe(time.time() - start_time)

        if result.returncode != 0:
            METRIC_COMMAND_RUNS.labels(action=self.name, status='exit_code').inc()
            stderr = (result.stderr or "").strip()[-STDERR_PREVIEW_LENGTH:]
            raise ReactionError(
                f"command '{self.command}' exited with status {result.returncode}"
                + (f": {stderr}" if stderr else "")
            )

        METRIC_COMMAND_RUNS.labels(action=self.name, status='success').inc()
        logger.info(f"Action '{self.name}' ran '{self.command}' successfully")
        if result.stdout:
            logger.debug(f"Action '{self.name}' output: {result.stdout.strip()}")

    def __repr__(self) -> str:
        return f"CommandAction(name={self.name!r}, command={self.command!r})"


class WebhookAction:
    """Forward each alert as JSON to an HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        if not url:
            raise ValueError(f"action '{name}' has an empty webhook URL")
        self.name = name
        self.url = url
        self.timeout = timeout
        self.headers = {'Content-Type': 'application/json'}
        if headers:
            self.headers.update(headers)

    def act_on(self, alert: Alert) -> None:
        # One request per delivery; reactions run on concurrent Flask threads.
        try:
            response = requests.post(
                self.url,
                json=alert.to_dict(),
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            METRIC_WEBHOOK_REQUESTS.labels(action=self.name, status='timeout').inc()
            raise ReactionError(f"webhook {self.url} timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError as e:
            METRIC_WEBHOOK_REQUESTS.labels(action=self.name, status='connection').inc()
            raise ReactionError(f"webhook {self.url} connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            METRIC_WEBHOOK_REQUESTS.labels(action=self.name, status='error').inc()
            raise ReactionError(f"webhook {self.url} request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            METRIC_WEBHOOK_REQUESTS.labels(action=self.name, status='http_error').inc()
            raise ReactionError(f"webhook {self.url} returned HTTP {response.status_code}")

        METRIC_WEBHOOK_REQUESTS.labels(action=self.name, status='success').inc()
        logger.info(f"Action '{self.name}' forwarded alert to {self.url} (HTTP {response.status_code})")

    def __repr__(self) -> str:
        return f"WebhookAction(name={self.name!r}, url={self.url!r})"
