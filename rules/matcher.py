import logging

from models.email import MessageView
from models.rules import And, Leaf, Or, Predicate
from rules.fields import resolve

logger = logging.getLogger(__name__)


def evaluate(predicate: Predicate, message: MessageView, resolver=resolve) -> bool:
    """
    Evaluates a compiled predicate tree against a message.

    A leaf is true when its pattern is found in at least one resolved value;
    no values means no match. And/Or short-circuit. Resolution errors are not
    caught here.
    """
    if isinstance(predicate, Leaf):
        values = resolver(message, predicate.field)
        result = any(predicate.pattern.search(value) for value in values)
        logger.debug("  Leaf: field='%s' pattern='%s' values=%d -> %s",
                     predicate.field, predicate.pattern.pattern, len(values), result)
        return result
    if isinstance(predicate, And):
        return all(evaluate(child, message, resolver) for child in predicate.children)
    if isinstance(predicate, Or):
        return any(evaluate(child, message, resolver) for child in predicate.children)
    raise TypeError(f"Unknown predicate node: {predicate!r}")
