import re
from typing import Any, List, Mapping, Sequence, Union

from models.rules import And, Leaf, Or, Predicate
from rules.errors import ConfigError, PatternCompileError

Rule = Mapping[str, Union[str, Sequence[str]]]


def _as_patterns(filter_name: str, field: str, value: Any) -> List[str]:
    """Turns the "pattern or list of patterns" shape into a plain list."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)) and value and all(isinstance(p, str) for p in value):
        return list(value)
    raise ConfigError(f"Filter '{filter_name}': field '{field}' needs a pattern or a non-empty list of patterns, got {value!r}")


def compile_rule(rule: Rule, filter_name: str = "") -> And:
    """
    Compiles one rule into an And node holding one Leaf per (field, pattern)
    pair. A field with several patterns contributes several leaves, so all of
    them have to match.
    """
    if not isinstance(rule, Mapping) or not rule:
        raise ConfigError(f"Filter '{filter_name}': each rule must be a non-empty mapping of field to pattern(s)")

    leaves = []
    for field, value in rule.items():
        if not isinstance(field, str) or not field:
            raise ConfigError(f"Filter '{filter_name}': rule field names must be non-empty strings, got {field!r}")
        selector = field.lower()
        for pattern in _as_patterns(filter_name, field, value):
            try:
                compiled = re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise PatternCompileError(filter_name, field, pattern, str(e)) from e
            leaves.append(Leaf(selector, compiled))
    return And(tuple(leaves))


def compile_rules(rules: Sequence[Rule], filter_name: str = "") -> Or:
    """Compiles the rule alternatives of a filter into an Or of per-rule And trees."""
    return Or(tuple(compile_rule(rule, filter_name) for rule in rules))


def compile_predicate(rules: Union[Rule, Sequence[Rule]], filter_name: str = "") -> Predicate:
    if isinstance(rules, Mapping):
        return compile_rule(rules, filter_name)
    if isinstance(rules, (list, tuple)):
        return compile_rules(rules, filter_name)
    raise ConfigError(f"Filter '{filter_name}': 'rules' must be a list of rule mappings")
