"""
Rule evaluation against aggregated counts.

Evaluation is a pure function of (counts, rules): every active rule whose
thresholds are all met is returned, in input order. Rules never suppress
each other.
"""

from collections.abc import Collection, Mapping, Sequence

from caresignal.domain.models import CorrelationRule
from caresignal.services.signal_sources import logger

_logger = logger.bind(component="rule_evaluator")


class RuleConfigurationError(ValueError):
    """Raised for a rule that cannot be evaluated as configured."""

    def __init__(self, rule_name: str, reason: str) -> None:
        super().__init__(f"Rule {rule_name!r} cannot be evaluated: {reason}")
        self.rule_name = rule_name
        self.reason = reason


def validate_rule(rule: CorrelationRule, known_domains: Collection[str] | None = None) -> None:
    """Check a rule is evaluable; raise RuleConfigurationError otherwise."""
    if not rule.required_domains:
        raise RuleConfigurationError(rule.name, "no required domains")

    for domain in rule.sorted_domains():
        threshold = rule.thresholds.get(domain)
        if threshold is None:
            raise RuleConfigurationError(rule.name, f"missing threshold for domain {domain!r}")
        if threshold < 1:
            raise RuleConfigurationError(
                rule.name, f"threshold for domain {domain!r} must be at least 1, got {threshold}"
            )
        if known_domains is not None and domain not in known_domains:
            raise RuleConfigurationError(rule.name, f"no aggregator for domain {domain!r}")


def is_satisfied(rule: CorrelationRule, counts: Mapping[str, int]) -> bool:
    """AND over required domains; a domain that was never aggregated counts as zero."""
    return all(counts.get(domain, 0) >= rule.thresholds[domain] for domain in rule.required_domains)


def partition_rules(
    rules: Sequence[CorrelationRule], known_domains: Collection[str] | None = None
) -> tuple[list[CorrelationRule], list[RuleConfigurationError]]:
    """Split active rules into evaluable ones and configuration errors."""
    valid: list[CorrelationRule] = []
    invalid: list[RuleConfigurationError] = []
    for rule in rules:
        if not rule.active:
            continue
        try:
            validate_rule(rule, known_domains)
        except RuleConfigurationError as e:
            _logger.warning("rule_skipped", rule_name=rule.name, reason=e.reason)
            invalid.append(e)
        else:
            valid.append(rule)
    return valid, invalid


def evaluate(
    counts: Mapping[str, int],
    rules: Sequence[CorrelationRule],
    known_domains: Collection[str] | None = None,
) -> list[CorrelationRule]:
    """
    Return the active rules whose threshold conditions are fully satisfied.

    Rules that fail validation are skipped and logged; one bad rule never
    blocks the others.
    """
    valid, _ = partition_rules(rules, known_domains)
    return [rule for rule in valid if is_satisfied(rule, counts)]


def required_domains(rules: Sequence[CorrelationRule]) -> set[str]:
    """Domains referenced by at least one of the given rules."""
    domains: set[str] = set()
    for rule in rules:
        domains.update(rule.required_domains)
    return domains
