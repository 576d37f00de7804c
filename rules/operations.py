import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from models.email import MessageView
from models.rules import Operation
from rules.errors import ProcessError

logger = logging.getLogger(__name__)

ENV_PREFIX = 'TAGRULER'


@dataclass
class ExecutionResult:
    filter_name: str
    added: FrozenSet[str] = frozenset()
    removed: FrozenSet[str] = frozenset()
    returncode: Optional[int] = None
    deleted: bool = False
    error: Optional[ProcessError] = None
    skipped_run: bool = field(default=False, repr=False)  # command not spawned in dry-run mode


def command_env(filter_name: str, message: MessageView, env_prefix: str = ENV_PREFIX) -> dict:
    """Environment for a filter command: the parent's plus the three context variables."""
    env = dict(os.environ)
    env[f'{env_prefix}_FILTER_NAME'] = filter_name
    env[f'{env_prefix}_FILE_NAME'] = message.path
    env[f'{env_prefix}_MSG_ID'] = message.id
    return env


def execute(operation: Operation, message: MessageView, filter_name: str,
            runner=subprocess.run, env_prefix: str = ENV_PREFIX, dry_run: bool = False) -> ExecutionResult:
    """
    Applies a matched filter's operation to the message view.

    Tags in `rm` are removed first, then `add` is applied, so a tag listed in
    both ends up present. The command, if any, runs after the tag changes and
    blocks until it exits; failing to run it is recorded on the result and
    leaves the tag changes in place.
    """
    before = set(message.tags)
    if operation.rm_all:
        message.tags.clear()
    message.tags.difference_update(operation.rm)
    message.tags.update(operation.add)

    result = ExecutionResult(
        filter_name=filter_name,
        added=frozenset(message.tags - before),
        removed=frozenset(before - message.tags),
        deleted=operation.delete,
    )

    if operation.run:
        argv = list(operation.run)
        if dry_run:
            logger.info("[DRY-RUN] Would run %s for message %s", argv, message.id)
            result.skipped_run = True
        else:
            result.returncode, result.error = _run_command(argv, message, filter_name, runner, env_prefix)
    return result


def _run_command(argv, message: MessageView, filter_name: str, runner, env_prefix: str):
    logger.debug("Running %s for message %s (filter '%s')", argv, message.id, filter_name)
    try:
        completed = runner(argv, env=command_env(filter_name, message, env_prefix), check=False)
    except (OSError, ValueError, subprocess.SubprocessError) as e:
        # ValueError: arguments or environment the OS cannot take, e.g. embedded NUL bytes
        error = ProcessError(filter_name, argv, reason=str(e))
        logger.warning("%s (message %s)", error, message.id)
        return None, error

    if completed.returncode != 0:
        error = ProcessError(filter_name, argv, returncode=completed.returncode)
        logger.warning("%s (message %s)", error, message.id)
        return completed.returncode, error
    return completed.returncode, None
