"""
Exceptions raised while loading and applying filters.

Load-time errors (ConfigError, PatternCompileError) abort a run before any
message is touched. The others are recoverable: the rule processor logs them,
records them on the message result and carries on.
"""


class RulesError(Exception):
    """Base class for every error raised by the rules package."""


class ConfigError(RulesError):
    """The rules file is missing or a filter has the wrong structure."""


class PatternCompileError(ConfigError):
    """A rule pattern is not a valid regular expression."""

    def __init__(self, filter_name: str, field: str, pattern: str, reason: str = ""):
        self.filter_name = filter_name
        self.field = field
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Filter '{filter_name}': invalid pattern {pattern!r} for field '{field}': {reason}")


class FieldResolutionError(RulesError):
    """Message content needed by a rule could not be read."""

    def __init__(self, message: str, selector: str = None, message_id: str = None):
        self.selector = selector
        self.message_id = message_id
        super().__init__(message)


class ProcessError(RulesError):
    """A filter command could not be spawned or exited with a non-zero status."""

    def __init__(self, filter_name: str, command, returncode: int = None, reason: str = ""):
        self.filter_name = filter_name
        self.command = list(command)
        self.returncode = returncode
        self.reason = reason
        if returncode is not None:
            detail = f"exited with status {returncode}"
        else:
            detail = f"could not be started: {reason}"
        super().__init__(f"Filter '{filter_name}': command {self.command} {detail}")


class StorageError(RulesError):
    """The message store failed to read or write a message's tags."""

    def __init__(self, message: str, message_id: str = None):
        self.message_id = message_id
        super().__init__(message)
