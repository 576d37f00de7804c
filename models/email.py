from dataclasses import dataclass, field
from email import message_from_bytes, policy
from email.message import EmailMessage
from typing import FrozenSet, Optional, Set

from rules.errors import FieldResolutionError


# Email data class used as the standard exchange format between the stores and the rule engine
@dataclass(frozen=True)
class Email:
    id: str
    thread_id: str
    path: str
    tags: FrozenSet[str] = frozenset()
    raw: Optional[bytes] = field(default=None, repr=False)  # read from `path` when missing


class MessageView:
    """
    Mutable per-message state threaded through one filter pass.

    `tags` starts as a copy of the stored tags and is changed in place by the
    operation executor. `thread_tags` is the snapshot taken before the run.
    Everything else is read-only access to the stored message.
    """

    def __init__(self, email: Email, thread_tags=frozenset()):
        self.email = email
        self.tags: Set[str] = set(email.tags)
        self.thread_tags: FrozenSet[str] = frozenset(thread_tags)
        self._parsed: Optional[EmailMessage] = None

    @property
    def id(self) -> str:
        return self.email.id

    @property
    def path(self) -> str:
        return self.email.path

    def parsed(self) -> EmailMessage:
        """Parses the message content once and caches it for the rest of the pass."""
        if self._parsed is None:
            raw = self.email.raw
            if raw is None:
                try:
                    with open(self.email.path, 'rb') as f:
                        raw = f.read()
                except OSError as e:
                    raise FieldResolutionError(f"Cannot read message file: {e}", message_id=self.id) from e
            self._parsed = message_from_bytes(raw, policy=policy.default)
        return self._parsed

    def __repr__(self):
        return f"MessageView(id={self.id!r}, tags={sorted(self.tags)!r})"
