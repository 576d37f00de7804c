from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Pattern, Tuple, Union


# Compiled predicate tree. Built once when the rules file is loaded, shared read-only afterwards.
@dataclass(frozen=True)
class Leaf:
    field: str          # lower-cased header name or reserved "@..." selector
    pattern: Pattern    # compiled case-insensitive regex


@dataclass(frozen=True)
class And:
    children: Tuple['Predicate', ...] = ()


@dataclass(frozen=True)
class Or:
    children: Tuple['Predicate', ...] = ()


Predicate = Union[Leaf, And, Or]


# Tag changes and command to run when a filter matches
@dataclass(frozen=True)
class Operation:
    add: FrozenSet[str] = frozenset()
    rm: FrozenSet[str] = frozenset()
    run: Optional[Tuple[str, ...]] = None   # argv, first element is the executable
    rm_all: bool = False                    # "rm": true drops every tag before "add"
    delete: bool = False                    # "del": true removes the message from the store


# A named group of rules (OR-combined) plus one operation
@dataclass(frozen=True)
class Filter:
    name: str
    op: Operation
    predicate: Predicate
    desc: str = ""
    rules: Tuple[Dict[str, Any], ...] = field(default=(), compare=False)  # raw rules, kept for diagnostics
