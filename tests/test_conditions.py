from __future__ import annotations

import pytest

from agent_desk.workflow.conditions import MAX_EXPRESSION_CHARS, evaluate_condition, parse_condition
from agent_desk.workflow.errors import ConditionError

CONTEXT = {
    "research": {"score": 7, "keyFindings": ["first", "second"], "approved": True},
    "tags": ["blog", "seo"],
    "draft": {"title": "Queues", "words": 180},
}


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("research.score > 5", True),
        ("research.score >= 8", False),
        ("1 < research.score < 10", True),
        ("'blog' in tags", True),
        ("'news' not in tags", True),
        ("research['keyFindings'][1] == 'second'", True),
        ("research.keyFindings[0] == 'first'", True),
        ("research.keyFindings[5] == None", True),
        ("research.approved and draft.words < 200", True),
        ("not research.approved or draft.title == 'Queues'", True),
        ("draft.title in ['Queues', 'Streams']", True),
        ("missing.path == None", True),
        ("missing.path", False),
        ("research.score > -1", True),
        ("draft.words < -2.5", False),
    ],
)
def test_expressions_evaluate_against_context(expression: str, expected: bool) -> None:
    assert evaluate_condition(expression, CONTEXT) is expected


def test_incompatible_comparisons_are_false() -> None:
    assert evaluate_condition("missing.score > 3", CONTEXT) is False
    assert evaluate_condition("draft.words > 'many'", CONTEXT) is False
    assert evaluate_condition("'x' in missing", CONTEXT) is False


@pytest.mark.parametrize(
    "expression",
    [
        "__import__('os').system('true')",
        "research.score + 1 > 2",
        "research.__class__",
        "_secret == 1",
        "lambda: True",
        "[item for item in tags]",
        "research[draft.title]",
        "tags if tags else None",
        "-research.score < 0",
        "-True == -1",
    ],
)
def test_disallowed_syntax_is_rejected(expression: str) -> None:
    with pytest.raises(ConditionError):
        parse_condition(expression)


def test_empty_and_oversized_expressions_are_rejected() -> None:
    with pytest.raises(ConditionError, match="non-empty"):
        parse_condition("   ")
    with pytest.raises(ConditionError, match="longer than"):
        parse_condition("a == 1 and " * (MAX_EXPRESSION_CHARS // 10) + "a == 1")
    with pytest.raises(ConditionError, match="Invalid condition syntax"):
        parse_condition("research.score >")
