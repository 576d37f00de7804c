import argparse
import logging
import sys

from rules.errors import ConfigError, StorageError
from rules.rules_processor import RuleProcessor


def _select_rules(rule_processor, rule_name: str = None, rule_index: int = None) -> bool:
    """Narrows the loaded filters down to the ones requested on the command line."""
    if rule_name:
        needle = rule_name.lower()
        matched = [f for f in rule_processor.rules if needle in f.name.lower() or needle in f.desc.lower()]
        if not matched:
            print(f"No filters found matching '{rule_name}'. Available filters:")
            for i, f in enumerate(rule_processor.rules):
                print(f"  {i}: {f.name} - {f.desc}")
            return False
        rule_processor.rules = tuple(matched)
        print(f"Filtered to {len(matched)} filter(s) matching '{rule_name}'")
    elif rule_index is not None:
        if rule_index < 0 or rule_index >= len(rule_processor.rules):
            print(f"Filter index {rule_index} out of range (0..{len(rule_processor.rules)-1})")
            return False
        rule_processor.rules = (rule_processor.rules[rule_index],)
        print(f"Filtered to filter index {rule_index}: '{rule_processor.rules[0].name}'")
    return True


def run_mail_processor(rules_file: str = 'rules/rules.json', db_name: str = 'email_data.db', source: str = 'db',
                       query_tag: str = 'new', dry_run: bool = False, verbose: bool = False,
                       rule_name: str = None, rule_index: int = None, workers: int = 1) -> int:
    """
    Main function to run the tagging filters.
    1. Load and compile the filters (any error stops here, nothing is touched).
    2. Open the message store.
    3. Load the messages carrying the query tag.
    4. Run the RuleProcessor against the messages.
    """
    print("--- Tag Rule Processor Started ---")

    # 1. Load filters
    try:
        rule_processor = RuleProcessor(
            rules_file=rules_file,
            dry_run=dry_run,
            verbose=verbose,
            workers=workers,
            query_tag=query_tag,
        )
    except ConfigError as e:
        print(f"Critical error loading filters: {e}")
        return 1

    if not _select_rules(rule_processor, rule_name, rule_index):
        return 1

    # 2. Open the store
    try:
        if source == 'gmail':
            from clients.gmail_client import GmailClient
            store = GmailClient()  # Authenticates here
        else:
            from data.data_manager import DBManager
            store = DBManager(db_name)
    except (StorageError, OSError) as e:
        print(f"Critical error during initialization: {e}")
        return 1
    rule_processor.db = store

    # 3. Load messages
    print(f"Step 3: Loading messages tagged '{query_tag}' from {source}...")
    try:
        if source == 'gmail':
            emails = store.fetch_emails(label=query_tag)
        else:
            emails = store.get_emails(tag=query_tag)
    except StorageError as e:
        print(f"Critical error loading messages: {e}")
        return 1

    # 4. Run
    print(f"Step 4: Executing {len(rule_processor.rules)} filter(s) on {len(emails)} message(s).")
    for i, f in enumerate(rule_processor.rules):
        print(f"  {i}: {f.name} - {f.desc}")
    summary = rule_processor.process_emails(emails)

    for result in summary.results:
        if result.matched:
            print(f"{result.message_id}: {', '.join(result.matched_names)}")
    for error in summary.errors:
        print(f"Error: {error}")

    # 5. Cleanup
    if hasattr(store, 'close'):
        store.close()
    print(f"--- Tag Rule Processor Finished: {summary.match_count} match(es) ---")
    return 1 if summary.failed else 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Apply tagging filters to new messages')
    parser.add_argument('--rules', default='rules/rules.json', help='Path of the JSON filters file')
    parser.add_argument('--db', default='email_data.db', help='SQLite message index (for --source db)')
    parser.add_argument('--source', choices=['db', 'gmail'], default='db', help='Where messages and tags live')
    parser.add_argument('--query-tag', default='new', help='Only process messages with this tag; it is removed afterwards')
    parser.add_argument('--dry-run', action='store_true', help='Do not run commands or store tags; just print matches')
    parser.add_argument('--verbose', action='store_true', help='Show per-message filter evaluations')
    parser.add_argument('--rule', type=str, help='Run only filters whose name or description contains this string (case-insensitive)')
    parser.add_argument('--rule-index', type=int, help='Run only the filter at this 0-based index')
    parser.add_argument('--workers', type=int, default=1, help='Number of messages filtered in parallel')
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    sys.exit(run_mail_processor(rules_file=args.rules, db_name=args.db, source=args.source,
                                query_tag=args.query_tag, dry_run=args.dry_run, verbose=args.verbose,
                                rule_name=args.rule, rule_index=args.rule_index, workers=args.workers))
