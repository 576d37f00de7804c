import base64
from unittest.mock import Mock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from clients.gmail_client import GmailClient
from models.email import Email
from rules.errors import StorageError

RAW = b"From: billing@real.bank\r\nSubject: Monthly report\r\n\r\nHi\r\n"

LABELS = {'labels': [
    {'id': 'INBOX', 'name': 'INBOX'},
    {'id': 'UNREAD', 'name': 'UNREAD'},
    {'id': 'Label_1', 'name': 'new'},
    {'id': 'Label_2', 'name': 'mute'},
]}


def make_client():
    service = Mock()
    api = service.users.return_value
    api.labels.return_value.list.return_value.execute.return_value = LABELS
    return GmailClient(service=service), api


def http_error():
    return HttpError(httplib2.Response({'status': '500'}), b'backend error')


def test_fetch_emails_maps_labels_to_tags():
    client, api = make_client()
    api.messages.return_value.list.return_value.execute.return_value = {'messages': [{'id': 'abc'}]}
    api.messages.return_value.get.return_value.execute.return_value = {
        'id': 'abc',
        'threadId': 'thr',
        'labelIds': ['INBOX', 'Label_1'],
        'raw': base64.urlsafe_b64encode(RAW).decode(),
    }

    emails = client.fetch_emails(label='new', max_results=10)

    api.messages.return_value.list.assert_called_once_with(userId='me', maxResults=10, labelIds=['Label_1'])
    api.messages.return_value.get.assert_called_once_with(userId='me', id='abc', format='raw')
    assert emails == [Email(id='abc', thread_id='thr', path='gmail://me/abc',
                            tags=frozenset(['INBOX', 'new']), raw=RAW)]


def test_fetch_with_unknown_label_returns_nothing():
    client, api = make_client()

    assert client.fetch_emails(label='does-not-exist') == []
    api.messages.return_value.list.assert_not_called()


def test_thread_tags_union():
    client, api = make_client()
    api.threads.return_value.get.return_value.execute.return_value = {'messages': [
        {'id': 'a', 'labelIds': ['INBOX']},
        {'id': 'b', 'labelIds': ['Label_2', 'UNREAD']},
    ]}

    assert client.get_thread_tags('thr') == {'INBOX', 'mute', 'UNREAD'}


def test_save_tags_sends_label_diff_and_creates_missing_labels():
    client, api = make_client()
    api.labels.return_value.create.return_value.execute.return_value = {'id': 'Label_9', 'name': '€£$'}
    email = Email(id='abc', thread_id='thr', path='gmail://me/abc', tags=frozenset(['INBOX', 'UNREAD', 'new']))

    client.save_tags(email, {'€£$', 'new'})

    api.messages.return_value.modify.assert_called_once_with(
        userId='me', id='abc',
        body={'addLabelIds': ['Label_9'], 'removeLabelIds': ['INBOX', 'UNREAD']})


def test_save_tags_without_changes_does_nothing():
    client, api = make_client()
    email = Email(id='abc', thread_id='thr', path='gmail://me/abc', tags=frozenset(['INBOX']))

    client.save_tags(email, ['INBOX'])

    api.messages.return_value.modify.assert_not_called()


def test_api_errors_become_storage_errors():
    client, api = make_client()
    api.messages.return_value.trash.return_value.execute.side_effect = http_error()
    email = Email(id='abc', thread_id='thr', path='gmail://me/abc')

    with pytest.raises(StorageError) as excinfo:
        client.delete_message(email)
    assert excinfo.value.message_id == 'abc'
