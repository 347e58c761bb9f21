"""
Output formatting utilities for rbaclab rules.
"""

import json
from dataclasses import asdict
from dataclasses import is_dataclass

from pydantic import BaseModel

from rbaclab.rules.data.rules import RULES
from rbaclab.rules.spec.result import RuleResult


def to_serializable(obj):
    # Pydantic model (v2)
    if isinstance(obj, BaseModel):
        return to_serializable(obj.model_dump(exclude_none=True))

    # Dataclass
    if is_dataclass(obj) and not isinstance(obj, type):
        return to_serializable(asdict(obj))

    # Dict
    if isinstance(obj, dict):
        return {k: to_serializable(v) for k, v in obj.items()}

    # List / Tuple / Set
    if isinstance(obj, (list, tuple, set)):
        return [to_serializable(v) for v in obj]

    # Primitive
    return obj


def format_match(match: dict, max_fields: int = 5) -> str:
    formatted_items = []
    for key, value in match.items():
        if value is None:
            continue
        if len(formatted_items) >= max_fields:
            break
        # Truncate long values
        str_value = str(value)
        if len(str_value) > 50:
            str_value = str_value[:47] + "..."
        formatted_items.append(f"{key}={str_value}")
    return ", ".join(formatted_items)


def _format_and_output_results(
    all_results: list[RuleResult],
    rule_names: list[str],
    output_format: str,
    total_facts: int,
    total_matches: int,
):
    """Format and output the results of rule execution."""
    if output_format == "json":
        print(json.dumps(to_serializable(all_results), indent=2))
        return

    # Text summary
    print("\n" + "=" * 60)
    if len(rule_names) == 1:
        print(f"EXECUTION SUMMARY - {RULES[rule_names[0]].name}")
    else:
        print("OVERALL SUMMARY")
    print("=" * 60)

    if len(rule_names) > 1:
        print(f"Rules executed: {len(rule_names)}")
    print(f"Total facts: {total_facts}")
    print(f"Total results: {total_matches}")

    if total_matches > 0:
        print(f"\n\033[36mRule execution completed with {total_matches} total results\033[0m")
    else:
        print("\n\033[90mRule execution completed with no results\033[0m")
