"""
Rule and Fact execution logic for rbaclab.
"""

import logging

from rbaclab.models.rbac import RbacPolicy
from rbaclab.rules.data.rules import RULES
from rbaclab.rules.formatters import _format_and_output_results
from rbaclab.rules.formatters import format_match
from rbaclab.rules.spec.model import Fact
from rbaclab.rules.spec.model import Maturity
from rbaclab.rules.spec.model import Rule
from rbaclab.rules.spec.result import CounterResult
from rbaclab.rules.spec.result import FactResult
from rbaclab.rules.spec.result import RuleResult

logger = logging.getLogger(__name__)


def _run_fact(
    fact: Fact,
    rule: Rule,
    policy: RbacPolicy,
    counter: CounterResult,
    output_format: str,
) -> FactResult:
    """Execute a single fact and return the result."""
    if output_format == "text":
        print(f"\n\033[1mFact {counter.current_fact}/{counter.total_facts}: {fact.name}\033[0m")
        print(f"  \033[36m{'Rule:':<12}\033[0m {rule.id} - {rule.name}")
        print(f"  \033[36m{'Fact ID:':<12}\033[0m {fact.id}")
        print(f"  \033[36m{'Description:':<12}\033[0m {fact.description}")
        print(f"  \033[36m{'Provider:':<12}\033[0m {fact.module.value}")

    raw_matches = fact.check(policy)
    # Validate rows against the rule's output model so json output has a stable shape.
    matches = [m.model_dump(exclude_none=True) for m in rule.parse_results(raw_matches)]
    matches_count = len(matches)
    logger.debug(f"Fact {fact.id} matched {matches_count} item(s)")

    if output_format == "text":
        if matches_count > 0:
            print(f"  \033[36m{'Results:':<12}\033[0m {matches_count} item(s) found")
            print("    Sample results:")
            for idx, match in enumerate(matches[:3]):
                print(f"      {idx + 1}. {format_match(match)}")
            if matches_count > 3:
                print(f"      ... and {matches_count - 3} more (use --output json to see all)")
        else:
            print(f"  \033[36m{'Results:':<12}\033[0m No items found")

    counter.total_matches += matches_count

    return FactResult(
        fact_id=fact.id,
        fact_name=fact.name,
        fact_description=fact.description,
        fact_provider=fact.module.value,
        matches=matches,
    )


def _run_single_rule(
    rule_name: str,
    policy: RbacPolicy,
    output_format: str,
    fact_filter: str | None = None,
    exclude_experimental: bool = False,
) -> RuleResult:
    """Execute a single rule and return results."""
    rule = RULES[rule_name]
    counter = CounterResult()

    filtered_facts: list[Fact] = []
    for fact in rule.facts:
        if exclude_experimental and fact.maturity != Maturity.STABLE:
            continue
        if fact_filter and fact.id.lower() != fact_filter.lower():
            continue
        counter.total_facts += 1
        filtered_facts.append(fact)

    if output_format == "text":
        print(f"Executing {rule.name} rule")
        if fact_filter:
            print(f"Filtered to fact: {fact_filter}")
        print(f"Total facts: {counter.total_facts}")

    fact_results = []
    for fact in filtered_facts:
        counter.current_fact += 1
        fact_results.append(_run_fact(fact, rule, policy, counter, output_format))

    return RuleResult(
        rule_id=rule.id,
        rule_name=rule.name,
        rule_description=rule.description,
        facts=fact_results,
        counter=counter,
    )


def run_rules(
    rule_names: list[str],
    policy: RbacPolicy,
    output_format: str = "text",
    fact_filter: str | None = None,
    exclude_experimental: bool = False,
) -> int:
    """
    Execute the specified rules against a loaded policy and present results.

    :param rule_names: The ids of the rules to execute.
    :param policy: The RbacPolicy to inspect.
    :param output_format: Either "text" or "json". Defaults to "text".
    :param fact_filter: Optional fact ID to filter execution (case-insensitive).
    :param exclude_experimental: Whether to exclude experimental facts from execution.
    :return: The exit code: 0 when nothing matched, 1 when any fact matched or a rule is unknown.
    """
    for rule_name in rule_names:
        if rule_name not in RULES:
            if output_format == "text":
                print(f"Unknown rule: {rule_name}")
                print(f"Available rules: {', '.join(RULES.keys())}")
            return 1

    all_results = []
    total_facts = 0
    total_matches = 0

    for i, rule_name in enumerate(rule_names):
        if output_format == "text" and len(rule_names) > 1:
            if i > 0:
                print("\n" + "=" * 60)
            print(f"Executing rule {i + 1}/{len(rule_names)}: {rule_name}")

        rule_result = _run_single_rule(
            rule_name,
            policy,
            output_format,
            fact_filter,
            exclude_experimental,
        )
        all_results.append(rule_result)
        total_facts += rule_result.counter.total_facts
        total_matches += rule_result.counter.total_matches

    _format_and_output_results(all_results, rule_names, output_format, total_facts, total_matches)

    return 1 if total_matches > 0 else 0
