"""
Alertmanager webhook payload records.

Decodes the JSON body Alertmanager sends to webhook receivers (payload
version 4) into immutable records. Reactions receive an Alert, never the
raw dict, so they cannot mutate what sibling reactions will see.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from actuator.errors import PayloadValidationError

SUPPORTED_PAYLOAD_VERSION = "4"

STATUS_FIRING = "firing"
STATUS_RESOLVED = "resolved"
VALID_STATUSES = (STATUS_FIRING, STATUS_RESOLVED)

# RFC 3339 as emitted by Go: optional fractional seconds up to nanoseconds.
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})$"
)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an Alertmanager timestamp into an aware datetime.

    Empty values and Go's zero time (year 1) map to None.
    """
    if not value:
        return None
    m = _TIMESTAMP_RE.match(str(value).strip())
    if not m:
        raise PayloadValidationError(f"invalid timestamp: {value!r}")
    text = m.group("base")
    frac = m.group("frac")
    if frac:
        text += "." + frac[:6].ljust(6, "0")
    tz = m.group("tz")
    text += "+00:00" if tz == "Z" else tz
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise PayloadValidationError(f"invalid timestamp {value!r}: {e}")
    if parsed.year <= 1:
        return None
    try:
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError) as e:
        # Offsets can push the UTC instant outside datetime's range
        raise PayloadValidationError(f"invalid timestamp {value!r}: {e}")


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _string_map(raw: Any, where: str) -> Mapping[str, str]:
    if raw is None:
        return MappingProxyType({})
    if not isinstance(raw, dict):
        raise PayloadValidationError(f"{where} must be an object")
    return MappingProxyType({str(k): "" if v is None else str(v) for k, v in raw.items()})


def _status(raw: Any, where: str, required: bool = True) -> str:
    if raw in (None, "") and not required:
        return ""
    if raw not in VALID_STATUSES:
        raise PayloadValidationError(f"{where} must be one of {VALID_STATUSES}, got: {raw!r}")
    return raw


@dataclass(frozen=True)
class Alert:
    """A single firing or resolved alert."""

    status: str
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    annotations: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    generator_url: str = ""
    fingerprint: str = ""

    @property
    def firing(self) -> bool:
        return self.status == STATUS_FIRING

    @classmethod
    def from_dict(cls, data: Dict[str, Any], where: str = "alert") -> "Alert":
        if not isinstance(data, dict):
            raise PayloadValidationError(f"{where} must be an object")
        return cls(
            status=_status(data.get("status"), f"{where}.status"),
            labels=_string_map(data.get("labels"), f"{where}.labels"),
            annotations=_string_map(data.get("annotations"), f"{where}.annotations"),
            starts_at=parse_timestamp(data.get("startsAt")),
            ends_at=parse_timestamp(data.get("endsAt")),
            generator_url=str(data.get("generatorURL") or ""),
            fingerprint=str(data.get("fingerprint") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialise back to Alertmanager's field names."""
        return {
            "status": self.status,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "startsAt": format_timestamp(self.starts_at),
            "endsAt": format_timestamp(self.ends_at),
            "generatorURL": self.generator_url,
            "fingerprint": self.fingerprint,
        }


@dataclass(frozen=True)
class WebhookPayload:
    """One webhook delivery from Alertmanager."""

    version: str
    alerts: Tuple[Alert, ...] = ()
    status: str = ""
    receiver: str = ""
    group_key: str = ""
    truncated_alerts: int = 0
    group_labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    common_labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    common_annotations: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    external_url: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "WebhookPayload":
        """
        Validate and decode a webhook body.

        Raises:
            PayloadValidationError: the body is not a version 4 payload
        """
        if not isinstance(data, dict):
            raise PayloadValidationError("payload must be a JSON object")

        version = str(data.get("version", ""))
        if version != SUPPORTED_PAYLOAD_VERSION:
            raise PayloadValidationError(f"unexpected payload version {version!r}")

        raw_alerts = data.get("alerts")
        if raw_alerts is None:
            raw_alerts = []
        if not isinstance(raw_alerts, list):
            raise PayloadValidationError("alerts must be a list")

        try:
            truncated = int(data.get("truncatedAlerts") or 0)
        except (TypeError, ValueError):
            raise PayloadValidationError("truncatedAlerts must be an integer")

        return cls(
            version=version,
            alerts=tuple(Alert.from_dict(a, f"alerts[{i}]") for i, a in enumerate(raw_alerts)),
            status=_status(data.get("status"), "status", required=False),
            receiver=str(data.get("receiver") or ""),
            group_key=str(data.get("groupKey") or ""),
            truncated_alerts=truncated,
            group_labels=_string_map(data.get("groupLabels"), "groupLabels"),
            common_labels=_string_map(data.get("commonLabels"), "commonLabels"),
            common_annotations=_string_map(data.get("commonAnnotations"), "commonAnnotations"),
            external_url=str(data.get("externalURL") or ""),
        )
