"""
=====================================================================
Actuator Dispatcher Unit Tests
=====================================================================
Tests for actuator/dispatcher.py
Run with: pytest tests/test_dispatcher_unit.py -v
=====================================================================
"""

import threading

import pytest
from unittest.mock import Mock

from actuator.dispatcher import Dispatcher, DispatchReport
from actuator.errors import DispatchCancelled, DispatchError, ReactionFailure
from actuator.labels import LabelSet
from actuator.plan import Plan
from conftest import make_payload

# Mark all tests as unit tests
pytestmark = pytest.mark.unit


def labels(**kwargs):
    return LabelSet.from_mapping(kwargs)


# =====================================================================
# MATCHING AND INVOCATION
# =====================================================================

class TestHandlePayload:
    """Test Dispatcher.handle_payload."""

    def test_unmatched_alert_runs_nothing(self, make_reaction, calls, mock_events):
        """Test an alert matching zero rules invokes nothing and is not an error"""
        plan = Plan()
        plan.register_rule(labels(severity="critical"), [make_reaction("page")])
        dispatcher = Dispatcher(plan, events=mock_events)

        report = dispatcher.handle_payload(make_payload(("f1", {"severity": "info"})))

        assert calls == []
        assert report.ok
        assert report.error is None
        assert report.unmatched == 1
        assert report.matched == 0

    def test_broad_then_narrow_groups_run(self, make_reaction, calls, mock_events):
        """Test every matched group runs, broad before narrow"""
        plan = Plan()
        plan.register_rule(labels(severity="critical"), [make_reaction("page")])
        plan.register_rule(labels(severity="critical", site="west"), [make_reaction("restart")])
        dispatcher = Dispatcher(plan, events=mock_events)

        report = dispatcher.handle_payload(
            make_payload(("f1", {"severity": "critical", "site": "west", "extra": "1"}))
        )

        assert calls == [("page", "f1"), ("restart", "f1")]
        assert report.invoked == 2
        assert report.ok

    def test_reactions_receive_the_alert(self, make_reaction, mock_events):
        """Test reactions are given the decoded alert record"""
        recorder = make_reaction("rec")
        plan = Plan()
        plan.register_rule(LabelSet(), [recorder])
        payload = make_payload(("f1", {"a": "1"}))

        Dispatcher(plan, events=mock_events).handle_payload(payload)

        assert recorder.alerts == [payload.alerts[0]]

    def test_common_labels_merged(self, make_reaction, calls, mock_events):
        """Test common and group labels take part in matching"""
        plan = Plan()
        plan.register_rule(labels(severity="critical", site="west"), [make_reaction("restart")])
        payload = make_payload(
            ("f1", {"site": "west"}),
            common={"severity": "critical"},
        )

        Dispatcher(plan, events=mock_events).handle_payload(payload)

        assert calls == [("restart", "f1")]

    def test_first_writer_wins(self, make_reaction, calls, mock_events):
        """Test a common label cannot be overridden by the alert's own value"""
        plan = Plan()
        plan.register_rule(labels(severity="info"), [make_reaction("low")])
        plan.register_rule(labels(severity="critical"), [make_reaction("high")])
        payload = make_payload(
            ("f1", {"severity": "info"}),
            common={"severity": "critical"},
            group={"severity": "warning"},
        )

        Dispatcher(plan, events=mock_events).handle_payload(payload)

        assert calls == [("high", "f1")]

    def test_alerts_do_not_share_labels(self, make_reaction, calls, mock_events):
        """Test one alert's labels never leak into the next"""
        plan = Plan()
        plan.register_rule(labels(site="west"), [make_reaction("west")])
        payload = make_payload(("f1", {"site": "west"}), ("f2", {"host": "db"}))

        report = Dispatcher(plan, events=mock_events).handle_payload(payload)

        assert calls == [("west", "f1")]
        assert report.matched == 1
        assert report.unmatched == 1

    def test_empty_payload(self, mock_events):
        """Test a payload without alerts is a no-op"""
        report = Dispatcher(Plan(), events=mock_events).handle_payload(make_payload())

        assert report.alerts == 0
        assert report.ok


# =====================================================================
# FAILURE ISOLATION
# =====================================================================

class TestFailureIsolation:
    """Test how reaction failures are contained and reported."""

    def test_failure_stops_rest_of_group(self, make_reaction, calls, mock_events):
        """Test later reactions in a failed group are skipped for that alert only"""
        plan = Plan()
        plan.register_rule(
            labels(severity="critical"),
            [make_reaction("first", fail=True), make_reaction("second")],
        )
        payload = make_payload(
            ("f1", {"severity": "critical"}),
            ("f2", {"severity": "critical"}),
        )

        report = Dispatcher(plan, events=mock_events).handle_payload(payload)

        assert calls == [("first", "f1"), ("first", "f2")]
        assert report.skipped == 2
        assert len(report.failures) == 2
        assert isinstance(report.error, DispatchError)

    def test_other_alerts_still_run(self, make_reaction, calls, mock_events):
        """Test a failure for one alert does not stop another alert's reactions"""
        plan = Plan()
        plan.register_rule(labels(host="a"), [make_reaction("boom", fail=True), make_reaction("after")])
        plan.register_rule(labels(host="b"), [make_reaction("ok")])
        payload = make_payload(("f1", {"host": "a"}), ("f2", {"host": "b"}))

        report = Dispatcher(plan, events=mock_events).handle_payload(payload)

        assert ("ok", "f2") in calls
        assert ("after", "f1") not in calls
        assert not report.ok
        assert len(report.error) == 1

    def test_other_groups_still_run(self, make_reaction, calls, mock_events):
        """Test a failed group does not stop a narrower group for the same alert"""
        plan = Plan()
        plan.register_rule(labels(severity="critical"), [make_reaction("broad", fail=True)])
        plan.register_rule(labels(severity="critical", site="west"), [make_reaction("narrow")])

        Dispatcher(plan, events=mock_events).handle_payload(
            make_payload(("f1", {"severity": "critical", "site": "west"}))
        )

        assert calls == [("broad", "f1"), ("narrow", "f1")]

    def test_failure_details(self, make_reaction, mock_events):
        """Test failures carry the alert identity, reaction name and cause"""
        plan = Plan()
        plan.register_rule(labels(a="1"), [make_reaction("boom", fail=True)])

        report = Dispatcher(plan, events=mock_events).handle_payload(
            make_payload(("f1", {"b": "2"}), common={"a": "1"})
        )

        failure = report.failures[0]
        assert failure.alert_key == "a=1;b=2;"
        assert failure.reaction == "boom"
        assert isinstance(failure.error, RuntimeError)
        assert report.to_dict()["failures"] == [
            {"alert": "a=1;b=2;", "reaction": "boom", "error": "boom exploded"}
        ]

    def test_raise_for_failures(self, make_reaction, mock_events):
        """Test the aggregate error can be raised"""
        plan = Plan()
        plan.register_rule(LabelSet(), [make_reaction("boom", fail=True)])
        report = Dispatcher(plan, events=mock_events).handle_payload(make_payload(("f1", {})))

        with pytest.raises(DispatchError, match="1 error occurred"):
            report.raise_for_failures()

    def test_failure_event_emitted(self, make_reaction, mock_events):
        """Test a reaction.failed event is sent to the sink"""
        plan = Plan()
        plan.register_rule(LabelSet(), [make_reaction("boom", fail=True), make_reaction("next")])

        Dispatcher(plan, events=mock_events).handle_payload(make_payload(("f1", {"a": "1"})))

        mock_events.emit.assert_any_call(
            "reaction.failed", alert_key="a=1;", reaction="boom", error="boom exploded", skipped=1
        )


# =====================================================================
# CANCELLATION
# =====================================================================

class TestCancellation:
    """Test the cancel_event deadline."""

    def test_set_event_skips_everything(self, make_reaction, calls, mock_events):
        """Test nothing runs once the event is set"""
        plan = Plan()
        plan.register_rule(LabelSet(), [make_reaction("x")])
        cancel = threading.Event()
        cancel.set()

        report = Dispatcher(plan, events=mock_events).handle_payload(
            make_payload(("f1", {"a": "1"})), cancel_event=cancel
        )

        assert calls == []
        assert report.cancelled is True
        assert isinstance(report.failures[0].error, DispatchCancelled)

    def test_cancel_mid_group(self, make_reaction, calls, mock_events):
        """Test reactions after the cancellation point do not run"""
        cancel = threading.Event()
        first = make_reaction("first")
        first.act_on = Mock(side_effect=lambda alert: cancel.set())
        plan = Plan()
        plan.register_rule(LabelSet(), [first, make_reaction("second")])

        report = Dispatcher(plan, events=mock_events).handle_payload(
            make_payload(("f1", {}), ("f2", {})), cancel_event=cancel
        )

        assert first.act_on.call_count == 1
        assert calls == []
        assert report.invoked == 1
        assert report.cancelled is True
        assert len(report.failures) == 1


# =====================================================================
# REPORT
# =====================================================================

class TestDispatchReport:
    """Test DispatchReport and DispatchError helpers."""

    def test_default_report_ok(self):
        """Test a fresh report has no error"""
        report = DispatchReport()

        assert report.ok
        report.raise_for_failures()

    def test_error_message_counts(self):
        """Test the aggregate message for several failures"""
        failures = [
            ReactionFailure("a=1;", "x", RuntimeError("one")),
            ReactionFailure("a=2;", "y", RuntimeError("two")),
        ]
        err = DispatchError(failures)

        assert str(err).startswith("2 errors occurred:")
        assert "x failed for alert {a=1;}: one" in str(err)
        assert len(err) == 2

    def test_default_event_sink(self):
        """Test a dispatcher without a sink logs events"""
        from actuator.logging_utils import LoggingEventSink

        assert isinstance(Dispatcher(Plan()).events, LoggingEventSink)
