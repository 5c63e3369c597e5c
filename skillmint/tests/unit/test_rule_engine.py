from __future__ import annotations

import json

from skillmint.services.rule_engine import (
    evaluate,
    placeholder_for_freeform,
    render_report,
    to_safe_prompt,
    try_parse_rules,
)


RULES = json.dumps(
    [
        {
            "id": "fit-1",
            "dimension": "market_fit",
            "conclusion": "strong_b2b_signal",
            "condition": {"keywords": ["B2B", "enterprise"]},
            "weight": 0.8,
        },
        {
            "id": "fit-2",
            "dimension": "market_fit",
            "conclusion": "consumer_signal",
            "condition": {"keywords": ["consumer"]},
            "weight": 0.2,
        },
        {"id": "risk-1", "dimension": "risk", "conclusion": "regulated", "condition": {"keywords": ["bank"]}},
    ]
)


def test_free_form_text_is_not_rules() -> None:
    assert try_parse_rules("Always recommend enterprise deals.") is None
    assert try_parse_rules("[]") is None
    assert try_parse_rules('[{"id": "x"}]') is None


def test_rules_parse_with_default_weight() -> None:
    rules = try_parse_rules(RULES)
    assert rules is not None
    assert [rule.id for rule in rules] == ["fit-1", "fit-2", "risk-1"]
    assert rules[2].weight == 0.5


def test_keyword_matching_scores_each_dimension() -> None:
    rules = try_parse_rules(RULES)
    evaluation = evaluate(rules, "An enterprise tool for B2B sales")
    by_dimension = {result.dimension: result for result in evaluation.results}
    assert by_dimension["market_fit"].score == 8
    assert by_dimension["market_fit"].conclusion_key == "strong_b2b_signal"
    assert by_dimension["market_fit"].triggered_rules == ["fit-1"]
    assert by_dimension["risk"].score == 0
    assert by_dimension["risk"].conclusion_key == "inconclusive"
    assert evaluation.overall_score == 4
    assert evaluation.verdict == "neutral"


def test_verdict_thresholds() -> None:
    rules = try_parse_rules(RULES)
    assert evaluate(rules, "enterprise bank").verdict == "recommend"
    assert evaluate(rules, "a hobby project").verdict == "caution"


def test_report_is_deterministic() -> None:
    rules = try_parse_rules(RULES)
    first = render_report(evaluate(rules, "enterprise bank"))
    second = render_report(evaluate(rules, "enterprise bank"))
    assert first == second
    assert first.startswith("Skill Evaluation\nOverall: 9/10 (recommend)")


def test_safe_prompt_carries_no_rule_content() -> None:
    rules = try_parse_rules(RULES)
    prompt = to_safe_prompt(evaluate(rules, "enterprise"), "enterprise")
    for secret in ("B2B", "consumer", "bank", "fit-1", "0.8"):
        assert secret not in prompt
    assert "strong_b2b_signal" in prompt


def test_freeform_placeholder_truncates_query() -> None:
    text = placeholder_for_freeform("q" * 150)
    assert "q" * 100 + "..." in text
    assert "q" * 101 not in text
