#!/usr/bin/env python3
import argparse
import os
import uuid
from email import message_from_binary_file, policy

from data.data_manager import DBManager
from models.email import Email


def _message_ids(value):
    return [part.strip() for part in str(value or '').split() if part.strip()]


def index_message_file(path: str, tags) -> Email:
    """Reads the headers of a message file and builds its index entry."""
    with open(path, 'rb') as f:
        msg = message_from_binary_file(f, policy=policy.default)

    message_id = str(msg.get('Message-ID') or '').strip().strip('<>') or f"{uuid.uuid4()}@local"
    # Thread root: first entry of References, else the parent, else the message itself
    references = _message_ids(msg.get('References')) or _message_ids(msg.get('In-Reply-To'))
    thread_id = references[0].strip('<>') if references else message_id
    return Email(id=message_id, thread_id=thread_id, path=os.path.abspath(path), tags=frozenset(tags))


def cmd_add(args):
    db = DBManager(args.db)
    # Skip messages already in the index so their current tags are left alone
    existing_ids = set(db.get_all_ids())
    for path in args.files:
        email = index_message_file(path, args.tag)
        if email.id in existing_ids:
            print(f"Skipped {email.id}: already indexed")
            continue
        db.save_email(email)
        existing_ids.add(email.id)
        print(f"Indexed {email.id} (thread {email.thread_id}) tags={sorted(email.tags)}")
    db.close()


def cmd_reset(args):
    db = DBManager(args.db)
    if args.all:
        confirm = input(f"Tag ALL messages with '{args.tag}' so they are filtered again? (y/N): ")
        if confirm.lower() != 'y':
            print('Canceled')
            return
        db.add_tag_all(args.tag)
        print(f"All messages tagged '{args.tag}'.")
    elif args.id:
        db.add_tag(args.id, args.tag)
        print(f"Message {args.id} tagged '{args.tag}'.")
    else:
        print('No action specified. Use --all or --id')
    db.close()


def cmd_show(args):
    db = DBManager(args.db)
    email = db.get_email(args.id)
    if email is None:
        print(f"Message {args.id} not found")
    else:
        print(f"{email.id} thread={email.thread_id} path={email.path} tags={sorted(email.tags)}")
    db.close()


def main():
    p = argparse.ArgumentParser(description='Manage the local message index')
    p.add_argument('--db', default='email_data.db', help='SQLite message index')
    sub = p.add_subparsers(dest='cmd')

    add = sub.add_parser('add', help='Index message files')
    add.add_argument('files', nargs='+', help='Message files (one RFC 822 message each)')
    add.add_argument('--tag', action='append', default=None, help="Initial tag, repeatable (default: 'new')")

    reset = sub.add_parser('reset-new', help='Queue messages for filtering again')
    reset.add_argument('--all', action='store_true', help='Queue every message')
    reset.add_argument('--id', type=str, help='Queue a specific message id')
    reset.add_argument('--tag', default='new', help='Queue tag to add')

    show = sub.add_parser('show', help='Show a message and its tags')
    show.add_argument('id', help='Message id')

    args = p.parse_args()

    if args.cmd == 'add':
        args.tag = args.tag or ['new']
        cmd_add(args)
    elif args.cmd == 'reset-new':
        cmd_reset(args)
    elif args.cmd == 'show':
        cmd_show(args)
    else:
        p.print_help()


if __name__ == '__main__':
    main()
