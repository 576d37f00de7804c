from unittest.mock import Mock

import pytest

from models.email import Email, MessageView
from models.rules import And, Or
from rules.compiler import compile_rule, compile_rules
from rules.errors import FieldResolutionError
from rules.matcher import evaluate

RAW = b"""From: Alice <alice@example.com>
To: team@example.com
Subject: Quarterly Report

Numbers attached.
"""


def make_view(raw=RAW, tags=()):
    return MessageView(Email(id="m1", thread_id="t1", path="/mail/m1", tags=frozenset(tags), raw=raw))


def test_and_requires_every_field():
    view = make_view()

    assert evaluate(compile_rule({"from": "alice", "subject": "report"}), view) is True
    assert evaluate(compile_rule({"from": "alice", "subject": "invoice"}), view) is False


def test_all_patterns_under_one_field_must_match():
    view = make_view()

    assert evaluate(compile_rule({"subject": ["quarter", "report"]}), view) is True
    assert evaluate(compile_rule({"subject": ["quarter", "month"]}), view) is False


def test_or_matches_if_any_alternative_matches():
    view = make_view()
    tree = compile_rules([{"from": "bob"}, {"to": "team@"}])

    assert evaluate(tree, view) is True
    assert evaluate(compile_rules([{"from": "bob"}, {"to": "boss"}]), view) is False


def test_match_ignores_letter_case():
    assert evaluate(compile_rule({"subject": "QUARTERLY report"}), make_view()) is True


def test_anchors_in_pattern_are_honoured():
    view = make_view()

    assert evaluate(compile_rule({"subject": "^quarterly"}), view) is True
    assert evaluate(compile_rule({"subject": "^report"}), view) is False


def test_missing_header_never_matches():
    assert evaluate(compile_rule({"x-mailer": ".*"}), make_view()) is False


def test_empty_nodes():
    view = make_view()

    assert evaluate(And(()), view) is True
    assert evaluate(Or(()), view) is False


def test_tags_leaf_uses_current_tags():
    view = make_view(tags=["inbox"])
    tree = compile_rule({"@tags": "^todo$"})

    assert evaluate(tree, view) is False
    view.tags.add("todo")
    assert evaluate(tree, view) is True


def test_and_short_circuits():
    resolver = Mock(return_value=[])
    tree = compile_rule({"from": "a", "subject": "b"})

    assert evaluate(tree, make_view(), resolver=resolver) is False
    resolver.assert_called_once()


def test_resolution_errors_propagate():
    resolver = Mock(side_effect=FieldResolutionError("boom", selector="@body"))

    with pytest.raises(FieldResolutionError):
        evaluate(compile_rule({"@body": "x"}), make_view(), resolver=resolver)
