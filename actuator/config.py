#!/usr/bin/env python3
"""
=====================================================================
Actuator - Configuration
=====================================================================
Two layers of configuration:

- Config: service settings from environment variables (address, rule
  file location, timeouts, logging). Validated fail-fast.
- Rule file: a YAML document declaring actions and the webhook handlers
  that route alerts to them. Loaded once at startup and turned into one
  Dispatcher per handler path.

Example rule file:

    actions:
      - name: notify                 # no command or webhook: log only
      - name: restart-web
        command: systemctl restart nginx
        timeout: 30
    handlers:
      - path: /
        token: s3cret
        action: notify               # every alert
      - path: /remediate
        rules:
          - labels: {severity: critical}
            actions: [notify]
          - labels: ["severity=critical", "site=west"]
            actions: [restart-web]
=====================================================================
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from actuator.actions import CommandAction, LogAction, Reaction, WebhookAction
from actuator.dispatcher import Dispatcher, EventSink
from actuator.errors import ConfigError, DuplicateLabelError
from actuator.labels import LabelSet
from actuator.plan import Plan

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "0.0.0.0:9942"
DEFAULT_CONFIG_FILE = "/etc/actuator/actuator.yml"

MATCH_MODES = ("subset", "prefix")


# =====================================================================
# SERVICE CONFIGURATION (ENVIRONMENT)
# =====================================================================

def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got: {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}")


def split_address(address: str):
    """Split "host:port" into (host, port)."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ConfigError(f"address must look like host:port, got: {address!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigError(f"address port must be an integer, got: {port!r}")
    if port_num < 1 or port_num > 65535:
        raise ConfigError(f"port must be between 1-65535, got: {port_num}")
    return host or "0.0.0.0", port_num


class Config:
    """Service configuration loaded from environment variables."""

    def __init__(self, address: Optional[str] = None, config_file: Optional[str] = None):
        self.ADDRESS = address or os.environ.get('ACTUATOR_ADDRESS', DEFAULT_ADDRESS)
        self.CONFIG_FILE = config_file or os.environ.get('ACTUATOR_CONFIG_FILE', DEFAULT_CONFIG_FILE)
        self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

        # Reaction timeouts (seconds)
        self.COMMAND_TIMEOUT = _env_float('COMMAND_TIMEOUT', 60.0)
        self.WEBHOOK_TIMEOUT = _env_float('WEBHOOK_TIMEOUT', 10.0)

        # Per-payload deadline (seconds, 0 = no deadline)
        self.DISPATCH_TIMEOUT = _env_float('DISPATCH_TIMEOUT', 0.0)

        # Request body limit
        self.MAX_PAYLOAD_BYTES = _env_int('MAX_PAYLOAD_BYTES', 1024 * 1024)

        self._validate()

    def _validate(self) -> None:
        """Validate critical configuration values."""
        self.HOST, self.PORT = split_address(self.ADDRESS)

        if not self.CONFIG_FILE:
            raise ConfigError("ACTUATOR_CONFIG_FILE is empty")

        if self.LOG_LEVEL not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigError(f"LOG_LEVEL invalid: {self.LOG_LEVEL}")

        if self.COMMAND_TIMEOUT <= 0:
            raise ConfigError(f"COMMAND_TIMEOUT must be positive, got: {self.COMMAND_TIMEOUT}")

        if self.WEBHOOK_TIMEOUT <= 0:
            raise ConfigError(f"WEBHOOK_TIMEOUT must be positive, got: {self.WEBHOOK_TIMEOUT}")

        if self.DISPATCH_TIMEOUT < 0:
            raise ConfigError(f"DISPATCH_TIMEOUT cannot be negative, got: {self.DISPATCH_TIMEOUT}")

        if self.MAX_PAYLOAD_BYTES < 1024:
            raise ConfigError(f"MAX_PAYLOAD_BYTES too low (min 1024): {self.MAX_PAYLOAD_BYTES}")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "address": self.ADDRESS,
            "config_file": self.CONFIG_FILE,
            "log_level": self.LOG_LEVEL,
            "command_timeout": self.COMMAND_TIMEOUT,
            "webhook_timeout": self.WEBHOOK_TIMEOUT,
            "dispatch_timeout": self.DISPATCH_TIMEOUT,
            "max_payload_bytes": self.MAX_PAYLOAD_BYTES,
        }


# =====================================================================
# RULE FILE
# =====================================================================

@dataclass
class Handler:
    """A webhook endpoint and the dispatcher that serves it."""

    path: str
    dispatcher: Dispatcher
    token: Optional[str] = None

    @property
    def plan(self) -> Plan:
        return self.dispatcher.plan


def parse_labels(raw: Any, where: str) -> LabelSet:
    """
    Build a strict label set from a mapping or a list of "key=value" strings.

    Raises:
        ConfigError: malformed labels or a duplicated key
    """
    try:
        if raw is None:
            return LabelSet()
        if isinstance(raw, dict):
            for key, value in raw.items():
                if isinstance(value, (dict, list)):
                    raise ConfigError(f"{where}: label {key!r} must have a scalar value")
            return LabelSet.from_mapping({str(k): "" if v is None else str(v) for k, v in raw.items()})
        if isinstance(raw, list):
            return LabelSet.parse(raw)
    except DuplicateLabelError as e:
        raise ConfigError(f"{where}: duplicate label key {e.key!r}") from e
    except ValueError as e:
        raise ConfigError(f"{where}: {e}") from e
    raise ConfigError(f"{where}: labels must be a mapping or a list of key=value strings")


def build_actions(raw_actions: Any, command_timeout: float = 60.0, webhook_timeout: float = 10.0) -> Dict[str, Reaction]:
    """Turn the `actions` section into named reactions."""
    if raw_actions is None:
        return {}
    if not isinstance(raw_actions, list):
        raise ConfigError("actions must be a list")

    actions: Dict[str, Reaction] = {}
    for i, ac in enumerate(raw_actions):
        where = f"actions[{i}]"
        if not isinstance(ac, dict):
            raise ConfigError(f"{where} must be a mapping")
        name = ac.get('name')
        if not name:
            raise ConfigError(f"{where} has no name")
        name = str(name)
        if name in actions:
            raise ConfigError(f"{where}: duplicate action name {name!r}")

        command = ac.get('command')
        webhook = ac.get('webhook')
        if command and webhook:
            raise ConfigError(f"{where}: action {name!r} sets both command and webhook")

        headers = ac.get('headers') or {}
        if not isinstance(headers, dict):
            raise ConfigError(f"{where}: headers must be a mapping")

        try:
            if command:
                actions[name] = CommandAction(name, str(command), timeout=float(ac.get('timeout', command_timeout)))
            elif webhook:
                actions[name] = WebhookAction(
                    name,
                    str(webhook),
                    timeout=float(ac.get('timeout', webhook_timeout)),
                    headers={str(k): str(v) for k, v in headers.items()},
                )
            else:
                logger.info(f"Action '{name}' has no command, and so will just be logged")
                actions[name] = LogAction(name)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{where}: {e}") from e
    return actions


def _lookup_actions(names: Any, actions: Dict[str, Reaction], where: str) -> List[Reaction]:
    if isinstance(names, str):
        names = [names]
    if not isinstance(names, list) or not names:
        raise ConfigError(f"{where}: actions must be a non-empty list of action names")
    resolved = []
    for name in names:
        if name not in actions:
            raise ConfigError(f"{where}: unknown action {name!r}")
        resolved.append(actions[name])
    return resolved


def build_plan(raw_handler: Dict[str, Any], actions: Dict[str, Reaction], where: str) -> Plan:
    match = str(raw_handler.get('match', 'subset')).lower()
    if match not in MATCH_MODES:
        raise ConfigError(f"{where}: match must be one of {MATCH_MODES}, got: {match!r}")
    plan = Plan(strict_prefix=(match == 'prefix'))

    if raw_handler.get('action') is not None:
        # Single action without conditions: react to every alert.
        plan.register_rule(LabelSet(), _lookup_actions(raw_handler['action'], actions, where))

    rules = raw_handler.get('rules') or []
    if not isinstance(rules, list):
        raise ConfigError(f"{where}: rules must be a list")
    for j, rule in enumerate(rules):
        rule_where = f"{where}.rules[{j}]"
        if not isinstance(rule, dict):
            raise ConfigError(f"{rule_where} must be a mapping")
        labels = parse_labels(rule.get('labels'), rule_where)
        plan.register_rule(labels, _lookup_actions(rule.get('actions'), actions, rule_where))

    if not plan.rules:
        raise ConfigError(f"{where}: handler needs an action or at least one rule")
    return plan


def build_handlers(
    document: Any,
    command_timeout: float = 60.0,
    webhook_timeout: float = 10.0,
    events: Optional[EventSink] = None,
) -> List[Handler]:
    """
    Build handlers from a parsed rule file.

    Raises:
        ConfigError: anything in the document is invalid
    """
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigError("rule file must contain a mapping at the top level")

    actions = build_actions(document.get('actions'), command_timeout, webhook_timeout)

    raw_handlers = document.get('handlers') or []
    if not isinstance(raw_handlers, list):
        raise ConfigError("handlers must be a list")

    handlers: List[Handler] = []
    seen_paths = set()
    for i, hc in enumerate(raw_handlers):
        where = f"handlers[{i}]"
        if not isinstance(hc, dict):
            raise ConfigError(f"{where} must be a mapping")
        path = str(hc.get('path') or '')
        if not path.startswith('/'):
            raise ConfigError(f"{where}: path must start with '/', got: {path!r}")
        if '<' in path or '>' in path:
            # Flask would read these as URL converters
            raise ConfigError(f"{where}: path must not contain '<' or '>', got: {path!r}")
        if path in seen_paths:
            raise ConfigError(f"{where}: duplicate handler path {path!r}")
        seen_paths.add(path)

        plan = build_plan(hc, actions, where)
        token = hc.get('token')
        handlers.append(Handler(path=path, dispatcher=Dispatcher(plan, events=events), token=str(token) if token else None))
        logger.info(
            f"Handler {path} ready with {len(plan.rules)} rule(s) "
            f"(match={'prefix' if plan.strict_prefix else 'subset'}, auth={'token' if token else 'none'})"
        )

    return handlers


def load_rule_file(path: str, config: Optional[Config] = None, events: Optional[EventSink] = None) -> List[Handler]:
    """Read and build the YAML rule file at `path`."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"rule file not found: {path}")
    except OSError as e:
        raise ConfigError(f"could not read rule file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"rule file {path} is not valid YAML: {e}") from e

    kwargs = {}
    if config is not None:
        kwargs = {"command_timeout": config.COMMAND_TIMEOUT, "webhook_timeout": config.WEBHOOK_TIMEOUT}
    handlers = build_handlers(document, events=events, **kwargs)
    logger.info(f"Loaded {len(handlers)} handler(s) from {path}")
    return handlers
