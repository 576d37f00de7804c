import logging
import sys

from models.email import Email
from rules.errors import RulesError
from rules.rules_processor import RuleProcessor

DEMO_MESSAGE = b"""From: Billing <billing@real.bank>
To: me@example.com
Subject: Monthly report
Message-ID: <demo-1@real.bank>

Your monthly report is ready.
"""


def make_demo_email():
    # Construct a message that will match the first rule of the "money" filter
    return Email(
        id='demo-1@real.bank',
        thread_id='demo-1@real.bank',
        path='/tmp/demo-1.eml',
        tags=frozenset(['inbox', 'unread']),
        raw=DEMO_MESSAGE,
    )


def run_demo():
    email = make_demo_email()
    # Use dry_run and verbose so the matches are printed but no command runs
    processor = RuleProcessor(rules_file='rules/rules.json', dry_run=True, verbose=True)
    summary = processor.process_emails([email])
    for result in summary.results:
        print(f"{result.message_id}: matched={result.matched_names} tags={sorted(result.tags)}")


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    try:
        run_demo()
    except RulesError as e:
        print('Demo failed:', e)
        sys.exit(1)
