import json
import logging
import os
from typing import Any, Tuple

from models.rules import Filter, Operation
from rules.compiler import compile_rules
from rules.errors import ConfigError
from rules.fields import RESERVED_SELECTORS

logger = logging.getLogger(__name__)

FILTER_KEYS = {'name', 'desc', 'rules', 'op'}
OP_KEYS = {'add', 'rm', 'run', 'del'}


def load_filters(file_path) -> Tuple[Filter, ...]:
    """Loads and compiles the JSON rules file. Any problem raises ConfigError."""
    if not os.path.exists(file_path):
        raise ConfigError(f"Rules file not found at {file_path}")

    with open(file_path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Rules file {file_path} is not valid JSON: {e}") from e
    return parse_filters(data)


def parse_filters(data: Any) -> Tuple[Filter, ...]:
    """
    Validates decoded filter definitions and compiles their rules.

    The whole list is compiled before anything is returned, so one bad
    filter or pattern rejects the complete ruleset.
    """
    if not isinstance(data, list):
        raise ConfigError("The rules file must contain a list of filters")
    return tuple(_parse_filter(index, filter_data) for index, filter_data in enumerate(data))


def _tag_set(filter_name: str, key: str, value: Any):
    if isinstance(value, str):
        return frozenset([value])
    if isinstance(value, list) and all(isinstance(t, str) for t in value):
        return frozenset(value)
    raise ConfigError(f"Filter '{filter_name}': op '{key}' must be a tag or a list of tags, got {value!r}")


def _parse_operation(filter_name: str, op_data: Any) -> Operation:
    if not isinstance(op_data, dict):
        raise ConfigError(f"Filter '{filter_name}': 'op' must be an object")
    unknown = set(op_data) - OP_KEYS
    if unknown:
        raise ConfigError(f"Filter '{filter_name}': unknown op key(s) {sorted(unknown)}")

    add = _tag_set(filter_name, 'add', op_data['add']) if 'add' in op_data else frozenset()

    rm, rm_all = frozenset(), False
    if 'rm' in op_data:
        if isinstance(op_data['rm'], bool):
            rm_all = op_data['rm']
        else:
            rm = _tag_set(filter_name, 'rm', op_data['rm'])

    run = None
    if 'run' in op_data:
        argv = op_data['run']
        if not isinstance(argv, list) or not argv or not all(isinstance(a, str) for a in argv) or not argv[0]:
            raise ConfigError(f"Filter '{filter_name}': 'run' must be a non-empty list of strings")
        run = tuple(argv)

    delete = op_data.get('del', False)
    if not isinstance(delete, bool):
        raise ConfigError(f"Filter '{filter_name}': 'del' must be true or false")

    return Operation(add=add, rm=rm, run=run, rm_all=rm_all, delete=delete)


def _parse_filter(index: int, filter_data: Any) -> Filter:
    if not isinstance(filter_data, dict):
        raise ConfigError(f"Filter #{index} must be an object")
    unknown = set(filter_data) - FILTER_KEYS
    if unknown:
        raise ConfigError(f"Filter #{index}: unknown key(s) {sorted(unknown)}")

    name = filter_data.get('name')
    if not isinstance(name, str) or not name:
        raise ConfigError(f"Filter #{index}: 'name' must be a non-empty string")
    desc = filter_data.get('desc', "")
    if not isinstance(desc, str):
        raise ConfigError(f"Filter '{name}': 'desc' must be a string")
    if 'rules' not in filter_data:
        raise ConfigError(f"Filter '{name}': missing 'rules'")
    if 'op' not in filter_data:
        raise ConfigError(f"Filter '{name}': missing 'op'")

    rules = filter_data['rules']
    if not isinstance(rules, list):
        raise ConfigError(f"Filter '{name}': 'rules' must be a list of rule mappings")
    for rule in rules:
        for field in rule if isinstance(rule, dict) else ():
            if isinstance(field, str) and field.startswith('@') and field.lower() not in RESERVED_SELECTORS:
                logger.warning("Filter '%s': '%s' is not a reserved field, matching it as a header", name, field)

    return Filter(
        name=name,
        desc=desc,
        rules=tuple(rules),
        predicate=compile_rules(rules, name),
        op=_parse_operation(name, filter_data['op']),
    )
