import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from models.email import Email, MessageView
from models.rules import Filter
from rules.errors import ConfigError, FieldResolutionError, RulesError, StorageError
from rules.loader import load_filters
from rules.matcher import evaluate
from rules.operations import ENV_PREFIX, execute

logger = logging.getLogger(__name__)


def validate_query_tag(tag: str) -> str:
    """The queue tag selects messages in the store, so it must be a single plain word."""
    if not tag:
        raise ConfigError("The query tag can't be empty")
    if any(c.isspace() or c in '"\'' for c in tag):
        raise ConfigError(f"The query tag can't contain whitespace or quotes: {tag!r}")
    return tag


@dataclass
class MessageResult:
    message_id: str
    matched: List[Filter] = field(default_factory=list)
    errors: List[RulesError] = field(default_factory=list)
    tags: FrozenSet[str] = frozenset()
    deleted: bool = False
    failed: bool = False  # the message could not be stored

    @property
    def matched_names(self) -> List[str]:
        return [f.name for f in self.matched]


@dataclass
class RunSummary:
    results: List[MessageResult] = field(default_factory=list)

    @property
    def match_count(self) -> int:
        return sum(len(r.matched) for r in self.results)

    @property
    def errors(self) -> List[RulesError]:
        return [e for r in self.results for e in r.errors]

    @property
    def failed(self) -> List[MessageResult]:
        return [r for r in self.results if r.failed]


class RuleProcessor:
    def __init__(self, rules_file='rules/rules.json', db_manager=None, dry_run: bool = False, verbose: bool = False,
                 workers: int = 1, query_tag: Optional[str] = None, env_prefix: str = ENV_PREFIX,
                 runner=subprocess.run):
        # Load rules only if a rules_file path is provided; allow tests to inject rules directly
        if rules_file:
            self.rules: Sequence[Filter] = load_filters(rules_file)
        else:
            self.rules: Sequence[Filter] = ()
        self.db = db_manager  # message store: get_thread_tags / save_tags / delete_message
        self.dry_run = dry_run
        self.verbose = verbose
        self.workers = max(1, workers)
        self.query_tag = validate_query_tag(query_tag) if query_tag is not None else None
        self.env_prefix = env_prefix
        self.runner = runner

    def apply(self, message: MessageView) -> MessageResult:
        """
        Runs every filter, in order, against one message.

        Each filter sees the tags as left by the filters before it. A filter
        that did not match is never looked at again in this pass, even if a
        later filter changes the tags it tests. Errors reading the message
        make that single filter a non-match.
        """
        result = MessageResult(message_id=message.id)
        for filter_ in self.rules:
            try:
                is_match = evaluate(filter_.predicate, message)
            except FieldResolutionError as e:
                logger.warning("Filter '%s' skipped for message %s: %s", filter_.name, message.id, e)
                result.errors.append(e)
                continue

            if self.verbose:
                logger.info("  Filter '%s' => %s", filter_.name, is_match)
            if not is_match:
                continue

            logger.info("Filter MATCHED: '%s' for message %s", filter_.name, message.id)
            result.matched.append(filter_)
            executed = execute(filter_.op, message, filter_.name, runner=self.runner,
                               env_prefix=self.env_prefix, dry_run=self.dry_run)
            if executed.error is not None:
                result.errors.append(executed.error)
            if executed.deleted:
                result.deleted = True
                logger.info("Message %s marked for deletion by filter '%s'", message.id, filter_.name)
                break

        result.tags = frozenset(message.tags)
        return result

    def build_thread_snapshots(self, emails: Iterable[Email]) -> Dict[str, FrozenSet[str]]:
        """
        Read-only pass computing the @thread-tags value of every thread in the batch.

        Done before any filtering so that tag changes made during the run never
        leak into another message's thread tags.
        """
        snapshots: Dict[str, FrozenSet[str]] = {}
        batch_tags: Dict[str, set] = {}
        for email in emails:
            batch_tags.setdefault(email.thread_id, set()).update(email.tags)

        for thread_id, tags in batch_tags.items():
            if self.db is not None and hasattr(self.db, 'get_thread_tags'):
                try:
                    snapshots[thread_id] = frozenset(self.db.get_thread_tags(thread_id))
                    continue
                except StorageError as e:
                    logger.warning("Falling back to batch tags for thread %s: %s", thread_id, e)
            snapshots[thread_id] = frozenset(tags)
        return snapshots

    def _filter_one(self, email: Email, thread_tags: FrozenSet[str]) -> MessageResult:
        if self.verbose:
            logger.info("Evaluating message %s: path='%s' tags=%s", email.id, email.path, sorted(email.tags))
        result = self.apply(MessageView(email, thread_tags))
        if self.query_tag:
            # The message has been through the filters, take it out of the queue
            result.tags = result.tags - {self.query_tag}
        return result

    def _store(self, email: Email, result: MessageResult):
        if self.dry_run or self.db is None:
            return
        try:
            if result.deleted:
                self.db.delete_message(email)
            elif result.tags != email.tags:
                self.db.save_tags(email, result.tags)
        except StorageError as e:
            logger.error("Failed to store message %s: %s", email.id, e)
            result.errors.append(e)
            result.failed = True

    def process_emails(self, emails: List[Email]) -> RunSummary:
        """Main loop to apply all loaded filters to a batch of messages."""
        logger.info("--- Starting Rule Processing on %d messages ---", len(emails))
        snapshots = self.build_thread_snapshots(emails)
        summary = RunSummary()

        def run(email):
            try:
                return self._filter_one(email, snapshots.get(email.thread_id, frozenset()))
            except Exception as e:
                # One broken message must not stop the batch
                logger.exception("Unexpected failure filtering message %s", email.id)
                error = e if isinstance(e, RulesError) else RulesError(f"Message {email.id}: {e}")
                return MessageResult(message_id=email.id, errors=[error], tags=email.tags, failed=True)

        if self.workers > 1 and len(emails) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                results = list(pool.map(run, emails))
        else:
            results = [run(email) for email in emails]

        # Storage handles are not shared with the workers; persist from this thread
        for email, result in zip(emails, results):
            if not result.failed:
                self._store(email, result)
            summary.results.append(result)

        logger.info("--- Finished: %d filter match(es), %d error(s), %d failed message(s) ---",
                    summary.match_count, len(summary.errors), len(summary.failed))
        return summary
