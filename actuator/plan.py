"""
=====================================================================
Actuator - Rule Registry (Plan)
=====================================================================
A Plan maps label conditions to groups of reactions. Each rule's label set
is flattened into trie segments once at startup; afterwards the plan is
only read, so concurrent requests can share it without locking.

Matching returns the reaction group of every rule whose labels are all
carried by the alert, broad rules (fewer labels) before narrow ones. A
plan built with strict_prefix=True instead requires the rule's segment
path to be a prefix of the alert's.

The builder helpers mirror the declarative style used by the rule file:

    plan = Plan.from_action_plans(
        do([page], when_alert_has_labels([Label("severity", "critical")])),
        do([restart], when_alert_has_labels(critical_west)),
    )
=====================================================================
"""

import logging
from typing import Callable, Iterable, List, NamedTuple, Sequence, Tuple

from actuator.actions import Reaction
from actuator.labels import Label, LabelSet
from actuator.trie import Trie

logger = logging.getLogger(__name__)

# Each label contributes a key segment and a value segment.
SEGMENTS_PER_LABEL = 2


class Rule(NamedTuple):
    """A label condition bound to an ordered group of reactions."""

    labels: LabelSet
    reactions: Tuple[Reaction, ...]


class Plan:
    """Read-mostly registry of rules backed by a segment trie."""

    def __init__(self, strict_prefix: bool = False):
        self.strict_prefix = strict_prefix
        self._trie = Trie()
        self._rules: List[Rule] = []

    def register_rule(self, labels: LabelSet, reactions: Sequence[Reaction]) -> bool:
        """
        Register reactions for alerts carrying every label in `labels`.

        Registering the same label set twice replaces the earlier group.

        Returns:
            True if this label set was not registered before.
        """
        rule = Rule(labels.copy(), tuple(reactions))
        novel = self._trie.insert(rule.labels, rule.reactions)
        if not novel:
            logger.warning(f"Rule for labels {{{rule.labels}}} replaces an earlier rule")
            self._rules = [r for r in self._rules if r.labels != rule.labels]
        self._rules.append(rule)
        logger.debug(f"Registered rule {{{rule.labels}}} with {len(rule.reactions)} reaction(s)")
        return novel

    def match(self, alert_labels: LabelSet) -> List[Tuple[Reaction, ...]]:
        """Return every applicable reaction group, broad before narrow."""
        if self.strict_prefix:
            return self._trie.get(alert_labels)
        return self._trie.get_subpaths(alert_labels, stride=SEGMENTS_PER_LABEL)

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    def __len__(self) -> int:
        return len(self._trie)

    @classmethod
    def from_rules(cls, rules: Iterable[Tuple[LabelSet, Sequence[Reaction]]], strict_prefix: bool = False) -> "Plan":
        plan = cls(strict_prefix=strict_prefix)
        for labels, reactions in rules:
            plan.register_rule(labels, reactions)
        return plan

    @classmethod
    def from_action_plans(cls, *action_plans: "ActionPlan", strict_prefix: bool = False) -> "Plan":
        """Build a plan by applying each action plan in order. Errors propagate."""
        plan = cls(strict_prefix=strict_prefix)
        for action_plan in action_plans:
            action_plan(plan)
        return plan


Condition = Callable[[Plan, Sequence[Reaction]], None]
ActionPlan = Callable[[Plan], None]


def when_alert_has_labels(labels: Iterable[Label]) -> Condition:
    """
    Condition matching alerts that carry all of `labels`.

    The label set is built strictly, so duplicate keys raise
    DuplicateLabelError when the plan is built.
    """
    labels = list(labels)

    def condition(plan: Plan, reactions: Sequence[Reaction]) -> None:
        plan.register_rule(LabelSet(labels), reactions)

    return condition


def do(reactions: Sequence[Reaction], *conditions: Condition) -> ActionPlan:
    """Run `reactions` whenever any of `conditions` applies."""
    reactions = tuple(reactions)

    def action_plan(plan: Plan) -> None:
        for condition in conditions:
            condition(plan, reactions)

    return action_plan
