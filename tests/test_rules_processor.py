import subprocess
from unittest.mock import Mock

import pytest

from models.email import Email, MessageView
from rules.errors import ConfigError, FieldResolutionError, ProcessError, StorageError
from rules.loader import parse_filters
from rules.rules_processor import RuleProcessor

MONEY = {
    "name": "money",
    "desc": "Money stuff",
    "rules": [
        {"from": "@(real\\.bank|gig-economy\\.career)", "subject": ["report", "month"]},
        {"from": "no-reply@trusted\\.bank", "subject": "statement"},
    ],
    "op": {"add": "€£$", "rm": ["inbox", "unread"]},
}


def make_raw(from_addr="billing@real.bank", subject="Monthly report", body="Hi"):
    return f"From: {from_addr}\nTo: me@example.com\nSubject: {subject}\n\n{body}\n".encode()


def make_email(id="m1", thread_id="t1", tags=("inbox", "unread"), raw=None, path=None, **raw_kwargs):
    return Email(id=id, thread_id=thread_id, path=path or f"/mail/new/{id}", tags=frozenset(tags),
                 raw=raw if raw is not None or path else make_raw(**raw_kwargs))


def make_processor(filters, **kwargs):
    rp = RuleProcessor(rules_file=None, **kwargs)
    # inject filters directly
    rp.rules = parse_filters(filters)
    return rp


def ok_runner(returncode=0):
    return Mock(return_value=subprocess.CompletedProcess(args=[], returncode=returncode))


def test_money_example_matches_first_alternative():
    rp = make_processor([MONEY])
    view = MessageView(make_email())

    result = rp.apply(view)

    assert result.matched_names == ["money"]
    assert view.tags == {"€£$"}


def test_money_example_second_alternative():
    rp = make_processor([MONEY])
    view = MessageView(make_email(from_addr="no-reply@trusted.bank", subject="Your STATEMENT"))

    assert rp.apply(view).matched_names == ["money"]


def test_subject_without_month_does_not_match():
    rp = make_processor([MONEY])
    view = MessageView(make_email(subject="Weekly report"))

    result = rp.apply(view)

    assert result.matched == []
    assert view.tags == {"inbox", "unread"}


def test_two_header_and_semantics():
    rp = make_processor([{"name": "both", "rules": [{"from": "alice", "subject": "lunch"}], "op": {"add": "x"}}])

    assert rp.apply(MessageView(make_email(from_addr="alice@example.com", subject="dinner"))).matched == []
    assert rp.apply(MessageView(make_email(from_addr="alice@example.com", subject="Lunch?"))).matched_names == ["both"]


def test_alternatives_match_disjoint_messages():
    rp = make_processor([{"name": "either", "rules": [{"from": "alice"}, {"from": "bob"}], "op": {"add": "friends"}}])

    assert rp.apply(MessageView(make_email(from_addr="alice@example.com"))).matched_names == ["either"]
    assert rp.apply(MessageView(make_email(from_addr="bob@example.com"))).matched_names == ["either"]
    assert rp.apply(MessageView(make_email(from_addr="carol@example.com"))).matched == []


def test_case_insensitive_header_match():
    rp = make_processor([{"name": "f", "rules": [{"subject": "monthly REPORT"}], "op": {"add": "x"}}])

    assert rp.apply(MessageView(make_email(subject="MONTHLY report"))).matched_names == ["f"]


def test_later_filters_see_earlier_tag_changes():
    f1 = {"name": "f1", "rules": [{"from": "real\\.bank"}], "op": {"add": "x"}}
    f2 = {"name": "f2", "rules": [{"@tags": "^x$"}], "op": {"add": "y"}}

    view = MessageView(make_email())
    assert make_processor([f1, f2]).apply(view).matched_names == ["f1", "f2"]
    assert view.tags == {"inbox", "unread", "x", "y"}

    # Reversed: f2 was already skipped when f1 added the tag
    view = MessageView(make_email())
    assert make_processor([f2, f1]).apply(view).matched_names == ["f1"]
    assert view.tags == {"inbox", "unread", "x"}


def test_filter_is_applied_once_per_pass():
    runner = ok_runner()
    f = {"name": "f", "rules": [{"@tags": "inbox"}], "op": {"add": "inbox2", "run": ["notify"]}}
    rp = make_processor([f], runner=runner)

    result = rp.apply(MessageView(make_email()))

    assert result.matched_names == ["f"]
    runner.assert_called_once()


def test_failing_command_keeps_tags_and_continues():
    runner = ok_runner(returncode=1)
    f1 = {"name": "f1", "rules": [{"from": "bank"}], "op": {"add": "x", "run": ["notify"]}}
    f2 = {"name": "f2", "rules": [{"@tags": "^x$"}], "op": {"add": "y"}}
    rp = make_processor([f1, f2], runner=runner)
    view = MessageView(make_email())

    result = rp.apply(view)

    assert result.matched_names == ["f1", "f2"]
    assert {"x", "y"} <= view.tags
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], ProcessError)


def test_unreadable_content_is_a_non_match_for_that_filter(tmp_path):
    f1 = {"name": "body", "rules": [{"@body": "anything"}], "op": {"add": "body"}}
    f2 = {"name": "tags", "rules": [{"@tags": "inbox"}], "op": {"add": "seen"}}
    rp = make_processor([f1, f2])
    view = MessageView(make_email(path=str(tmp_path / "gone.eml")))

    result = rp.apply(view)

    assert result.matched_names == ["tags"]
    assert isinstance(result.errors[0], FieldResolutionError)
    assert view.tags == {"inbox", "unread", "seen"}


def test_delete_stops_remaining_filters():
    f1 = {"name": "junk", "rules": [{"subject": "viagra"}], "op": {"del": True}}
    f2 = {"name": "all", "rules": [{"from": ".*"}], "op": {"add": "seen"}}
    rp = make_processor([f1, f2])

    result = rp.apply(MessageView(make_email(subject="cheap viagra")))

    assert result.matched_names == ["junk"]
    assert result.deleted is True


def test_thread_tags_are_snapshotted_before_the_run():
    mute = {"name": "mute", "rules": [{"subject": "mute me"}], "op": {"add": "mute"}}
    muted = {"name": "muted", "rules": [{"@thread-tags": "^mute$"}], "op": {"rm": "inbox"}}
    rp = make_processor([mute, muted])
    first = make_email(id="a", thread_id="t1", subject="mute me")
    second = make_email(id="b", thread_id="t1", subject="reply")

    summary = rp.process_emails([first, second])

    # "a" was muted during the run; neither message sees it as a thread tag
    assert summary.results[0].matched_names == ["mute"]
    assert summary.results[1].matched == []


def test_thread_tags_from_store():
    db = Mock()
    db.get_thread_tags.return_value = {"mute", "inbox"}
    muted = {"name": "muted", "rules": [{"@thread-tags": "^mute$"}], "op": {"rm": "inbox"}}
    rp = make_processor([muted], db_manager=db)
    email = make_email()

    summary = rp.process_emails([email])

    db.get_thread_tags.assert_called_once_with("t1")
    assert summary.results[0].matched_names == ["muted"]
    db.save_tags.assert_called_once_with(email, frozenset(["unread"]))


def test_batch_results_and_storage():
    db = Mock(spec=["save_tags", "delete_message"])
    rp = make_processor([MONEY], db_manager=db)
    matching = make_email(id="a")
    other = make_email(id="b", subject="Hello")

    summary = rp.process_emails([matching, other])

    assert [r.message_id for r in summary.results] == ["a", "b"]
    assert summary.match_count == 1
    db.save_tags.assert_called_once_with(matching, frozenset(["€£$"]))


def test_query_tag_is_removed_after_the_pass():
    db = Mock(spec=["save_tags", "delete_message"])
    f = {"name": "new", "rules": [{"@tags": "^new$"}], "op": {"add": "seen"}}
    rp = make_processor([f], db_manager=db, query_tag="new")
    email = make_email(tags=["new", "inbox"])

    summary = rp.process_emails([email])

    assert summary.results[0].matched_names == ["new"]
    db.save_tags.assert_called_once_with(email, frozenset(["inbox", "seen"]))


def test_deleted_message_goes_to_store():
    db = Mock(spec=["save_tags", "delete_message"])
    rp = make_processor([{"name": "junk", "rules": [{"subject": "spam"}], "op": {"del": True}}], db_manager=db)
    email = make_email(subject="spam spam")

    rp.process_emails([email])

    db.delete_message.assert_called_once_with(email)
    db.save_tags.assert_not_called()


def test_storage_failure_is_isolated_per_message():
    db = Mock(spec=["save_tags", "delete_message"])
    db.save_tags.side_effect = [StorageError("disk full", message_id="a"), None]
    rp = make_processor([MONEY], db_manager=db)

    summary = rp.process_emails([make_email(id="a"), make_email(id="b")])

    assert [r.failed for r in summary.results] == [True, False]
    assert db.save_tags.call_count == 2
    assert len(summary.failed) == 1
    assert isinstance(summary.errors[0], StorageError)


def test_dry_run_simulates_without_side_effects():
    db = Mock(spec=["save_tags", "delete_message"])
    runner = ok_runner()
    f1 = dict(MONEY, op={"add": "€£$", "rm": ["inbox", "unread"], "run": ["notify"]})
    f2 = {"name": "after", "rules": [{"@tags": "€£\\$"}], "op": {"add": "seen"}}
    rp = make_processor([f1, f2], db_manager=db, runner=runner, dry_run=True)

    summary = rp.process_emails([make_email()])

    assert summary.results[0].matched_names == ["money", "after"]
    assert summary.results[0].tags == {"€£$", "seen"}
    runner.assert_not_called()
    db.save_tags.assert_not_called()


def test_parallel_workers_give_the_same_results():
    emails = [make_email(id=f"m{i}", subject="Monthly report" if i % 2 else "Hello") for i in range(20)]
    sequential = make_processor([MONEY]).process_emails(emails)
    parallel = make_processor([MONEY], workers=4).process_emails(emails)

    assert [r.matched_names for r in parallel.results] == [r.matched_names for r in sequential.results]
    assert [r.tags for r in parallel.results] == [r.tags for r in sequential.results]
    assert parallel.match_count == 10


def test_command_that_cannot_start_keeps_tags_and_continues():
    # The OS refuses arguments with NUL bytes before anything is spawned
    f1 = {"name": "f1", "rules": [{"from": "bank"}], "op": {"add": "x", "run": ["echo", "a\u0000b"]}}
    f2 = {"name": "f2", "rules": [{"@tags": "^x$"}], "op": {"add": "y"}}
    rp = make_processor([f1, f2])

    summary = rp.process_emails([make_email()])

    result = summary.results[0]
    assert result.failed is False
    assert result.matched_names == ["f1", "f2"]
    assert {"x", "y"} <= result.tags
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], ProcessError)
    assert result.errors[0].returncode is None
    assert result.errors[0].reason


@pytest.mark.parametrize("tag", ["", "two words", 'say"hi', "it's"])
def test_bad_query_tag_is_rejected(tag):
    with pytest.raises(ConfigError):
        RuleProcessor(rules_file=None, query_tag=tag)


def test_plain_query_tag_is_accepted():
    assert RuleProcessor(rules_file=None, query_tag="new").query_tag == "new"
