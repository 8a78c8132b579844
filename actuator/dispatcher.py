"""
=====================================================================
Actuator - Dispatcher
=====================================================================
Handles one webhook payload at a time:

1. Builds a base label set from the payload's common labels, then its
   group labels (first writer wins).
2. For each alert, copies the base and accumulates the alert's own labels.
3. Looks up every matching reaction group in the plan.
4. Runs each group's reactions in order. A failing reaction stops the rest
   of its group for that alert; other groups and other alerts still run.
5. Collects every failure into a DispatchReport for the caller.

The dispatcher holds no per-payload state, so one instance can serve
concurrent requests as long as the plan is not modified.
=====================================================================
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

from prometheus_client import Counter, Histogram

from actuator.actions import reaction_name
from actuator.errors import DispatchCancelled, DispatchError, ReactionFailure
from actuator.labels import LabelSet
from actuator.logging_utils import LoggingEventSink
from actuator.models import WebhookPayload
from actuator.plan import Plan

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_ALERTS_TOTAL = Counter(
    'actuator_alerts_total',
    'Total alerts seen by the dispatcher',
    ['result']  # matched, unmatched
)

METRIC_REACTIONS_TOTAL = Counter(
    'actuator_reactions_total',
    'Total reaction invocations',
    ['status']  # success, failure, skipped
)

METRIC_REACTION_LATENCY = Histogram(
    'actuator_reaction_latency_seconds',
    'Time spent in a single reaction invocation',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)


class EventSink(Protocol):
    """Structured event collaborator used instead of a global logger."""

    def emit(self, event: str, **fields: Any) -> None:
        ...


@dataclass
class DispatchReport:
    """Outcome of handling one payload."""

    alerts: int = 0
    matched: int = 0
    unmatched: int = 0
    invoked: int = 0
    skipped: int = 0
    cancelled: bool = False
    failures: List[ReactionFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def error(self) -> Optional[DispatchError]:
        """Aggregate error for every failure, or None when there were none."""
        if not self.failures:
            return None
        return DispatchError(self.failures)

    def raise_for_failures(self) -> None:
        err = self.error
        if err is not None:
            raise err

    def to_dict(self) -> dict:
        return {
            "alerts": self.alerts,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "invoked": self.invoked,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "failures": [
                {"alert": f.alert_key, "reaction": f.reaction, "error": str(f.error)}
                for f in self.failures
            ],
        }


class Dispatcher:
    """Routes each alert of a payload to the reactions its labels match."""

    def __init__(self, plan: Plan, events: Optional[EventSink] = None):
        self.plan = plan
        self.events = events or LoggingEventSink()

    def handle_payload(
        self,
        payload: WebhookPayload,
        cancel_event: Optional[threading.Event] = None,
    ) -> DispatchReport:
        """
        Run every matched reaction for every alert in `payload`.

        Never raises for reaction failures; inspect the returned report (or
        call report.raise_for_failures()). If `cancel_event` becomes set,
        reactions not yet started are skipped and one DispatchCancelled
        failure is recorded.
        """
        report = DispatchReport(alerts=len(payload.alerts))

        base = LabelSet()
        base.accumulate_map(payload.common_labels)
        base.accumulate_map(payload.group_labels)

        for alert in payload.alerts:
            labels = base.copy()
            labels.accumulate_map(alert.labels)
            alert_key = str(labels)
            self.events.emit("alert.received", alert_key=alert_key, status=alert.status)

            groups = self.plan.match(labels)
            if not groups:
                report.unmatched += 1
                METRIC_ALERTS_TOTAL.labels(result='unmatched').inc()
                self.events.emit("alert.unmatched", alert_key=alert_key)
                continue

            report.matched += 1
            METRIC_ALERTS_TOTAL.labels(result='matched').inc()
            self.events.emit("alert.matched", alert_key=alert_key, groups=len(groups))

            for group in groups:
                for position, reaction in enumerate(group):
                    if cancel_event is not None and cancel_event.is_set():
                        self._cancel(report, alert_key, reaction)
                        return report

                    name = reaction_name(reaction)
                    start_time = time.time()
                    try:
                        reaction.act_on(alert)
                    except Exception as e:
                        METRIC_REACTION_LATENCY.observe(time.time() - start_time)
                        METRIC_REACTIONS_TOTAL.labels(status='failure').inc()
                        report.invoked += 1
                        report.failures.append(ReactionFailure(alert_key, name, e))
                        remaining = len(group) - position - 1
                        report.skipped += remaining
                        if remaining:
                            METRIC_REACTIONS_TOTAL.labels(status='skipped').inc(remaining)
                        self.events.emit(
                            "reaction.failed",
                            alert_key=alert_key,
                            reaction=name,
                            error=str(e),
                            skipped=remaining,
                        )
                        break

                    METRIC_REACTION_LATENCY.observe(time.time() - start_time)
                    METRIC_REACTIONS_TOTAL.labels(status='success').inc()
                    report.invoked += 1
                    self.events.emit("reaction.succeeded", alert_key=alert_key, reaction=name)

        if report.failures:
            logger.warning(
                f"Payload handled with {len(report.failures)} failure(s): "
                f"alerts={report.alerts} matched={report.matched} invoked={report.invoked}"
            )
        else:
            logger.debug(
                f"Payload handled: alerts={report.alerts} matched={report.matched} "
                f"unmatched={report.unmatched} invoked={report.invoked}"
            )
        return report

    def _cancel(self, report: DispatchReport, alert_key: str, reaction: object) -> None:
        report.cancelled = True
        name = reaction_name(reaction)
        report.failures.append(
            ReactionFailure(alert_key, name, DispatchCancelled("dispatch cancelled before reaction ran"))
        )
        self.events.emit("dispatch.cancelled", alert_key=alert_key, reaction=name)
