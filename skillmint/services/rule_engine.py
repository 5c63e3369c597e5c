"""In-process evaluation of structured skill rules.

Rules are a JSON array of objects::

    [{"id": "r1", "dimension": "market_fit", "conclusion": "strong_signal",
      "condition": {"keywords": ["b2b"]}, "weight": 0.8}]

Only dimension names, scores and conclusion tokens ever leave this module;
rule ids are reported but conditions and rule text are not.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


_DEFAULT_WEIGHT = 0.5
_QUERY_PREVIEW_CHARS = 100


class RuleCondition(BaseModel):
    keywords: list[str] = Field(default_factory=list)


class Rule(BaseModel):
    id: str
    dimension: str
    conclusion: str
    condition: RuleCondition | None = None
    weight: float = _DEFAULT_WEIGHT


_RULES_ADAPTER = TypeAdapter(list[Rule])


@dataclass(frozen=True)
class DimensionResult:
    dimension: str
    score: int
    triggered_rules: list[str]
    conclusion_key: str


@dataclass(frozen=True)
class Evaluation:
    results: list[DimensionResult] = field(default_factory=list)
    verdict: str = "neutral"
    overall_score: int = 5


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def try_parse_rules(text: str) -> list[Rule] | None:
    """Return rules if the text is a non-empty JSON rule array, else None."""
    try:
        raw: Any = json.loads(text.strip())
    except ValueError:
        return None
    if not isinstance(raw, list) or not raw:
        return None
    try:
        return _RULES_ADAPTER.validate_python(raw)
    except ValidationError:
        return None


def _matches(rule: Rule, query_lower: str) -> bool:
    # Rules without keywords always fire.
    keywords = rule.condition.keywords if rule.condition is not None else []
    return not keywords or any(keyword.lower() in query_lower for keyword in keywords)


def evaluate(rules: list[Rule], query: str) -> Evaluation:
    query_lower = query.lower()
    by_dimension: dict[str, list[Rule]] = {}
    for rule in rules:
        by_dimension.setdefault(rule.dimension, []).append(rule)

    results: list[DimensionResult] = []
    for dimension, dimension_rules in by_dimension.items():
        triggered = [rule for rule in dimension_rules if _matches(rule, query_lower)]
        max_weight = sum(rule.weight for rule in dimension_rules)
        triggered_weight = sum(rule.weight for rule in triggered)
        score = _round_half_up(triggered_weight / max_weight * 10) if max_weight > 0 else 5
        # Stable sort keeps declaration order among equal weights.
        top = sorted(triggered, key=lambda rule: rule.weight, reverse=True)
        results.append(
            DimensionResult(
                dimension=dimension,
                score=score,
                triggered_rules=[rule.id for rule in triggered],
                conclusion_key=top[0].conclusion if top else "inconclusive",
            )
        )

    overall = _round_half_up(sum(r.score for r in results) / len(results)) if results else 5
    if overall >= 7:
        verdict = "recommend"
    elif overall >= 4:
        verdict = "neutral"
    else:
        verdict = "caution"
    return Evaluation(results=results, verdict=verdict, overall_score=overall)


def render_report(evaluation: Evaluation) -> str:
    lines = [
        "Skill Evaluation",
        f"Overall: {evaluation.overall_score}/10 ({evaluation.verdict})",
        "",
    ]
    lines.extend(f"- {r.dimension}: {r.score}/10 - {r.conclusion_key}" for r in evaluation.results)
    return "\n".join(lines)


def to_safe_prompt(evaluation: Evaluation | None, query: str) -> str:
    """Prompt for language polishing that carries no rule content."""
    if evaluation is None:
        return "\n".join(
            [
                f"User query: {query}",
                "",
                "The skill holds free-form knowledge that is evaluated privately.",
                "Acknowledge the query briefly and do not invent any skill-specific findings.",
            ]
        )
    dimension_lines = [
        f'  - {r.dimension}: score={r.score}/10, conclusion="{r.conclusion_key}"' for r in evaluation.results
    ]
    return "\n".join(
        [
            f"User query: {query}",
            "",
            "Structured skill evaluation:",
            f"  Overall score: {evaluation.overall_score}/10",
            f"  Verdict: {evaluation.verdict}",
            "  Dimension breakdown:",
            *dimension_lines,
            "",
            "Write a concise natural language response based solely on the above evaluation data.",
            "Do not infer or add information beyond what is shown.",
        ]
    )


def placeholder_for_freeform(query: str) -> str:
    preview = query[:_QUERY_PREVIEW_CHARS]
    if len(query) > _QUERY_PREVIEW_CHARS:
        preview += "..."
    return (
        f'[Skill processed your query: "{preview}"]\n\n'
        "This skill uses free-form knowledge. "
        "To enable structured evaluation with local rule matching, the author should format rules as a JSON array."
    )
