import base64
import logging
import os
import pickle
from typing import Dict, Iterable, List, Optional, Set

from google.auth.transport.requests import Request
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from models.email import Email
from rules.errors import StorageError

logger = logging.getLogger(__name__)

# Scopes required for read access and label changes
SCOPES = ['https://www.googleapis.com/auth/gmail.readonly',
          'https://www.googleapis.com/auth/gmail.modify']
CREDENTIALS_FILE = 'client_secret.json'
TOKEN_PICKLE = 'token.pickle'


class GmailClient:
    """Gmail as a message store: labels are the tags filters read and change."""

    def __init__(self, service=None, user_id='me'):
        self.service = service or self.authenticate()
        self.user_id = user_id
        self._labels: Optional[Dict[str, str]] = None  # label id -> name

    def authenticate(self):
        """Handles the OAuth flow, storing and refreshing tokens."""
        creds = None
        # The file token.pickle stores the user's access and refresh tokens
        if os.path.exists(TOKEN_PICKLE):
            with open(TOKEN_PICKLE, 'rb') as token:
                creds = pickle.load(token)

        # If no (valid) credentials available, let the user log in.
        if not creds or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
            else:
                flow = InstalledAppFlow.from_client_secrets_file(CREDENTIALS_FILE, SCOPES)
                try:
                    creds = flow.run_local_server(port=0)
                except Exception:
                    logger.error("OAuth authorization failed. Ensure the authorization URL is opened and consent is granted.")
                    raise

            # Save the credentials for the next run
            with open(TOKEN_PICKLE, 'wb') as token:
                pickle.dump(creds, token)

        return build('gmail', 'v1', credentials=creds)

    def _label_map(self, refresh: bool = False) -> Dict[str, str]:
        if self._labels is None or refresh:
            resp = self.service.users().labels().list(userId=self.user_id).execute()
            self._labels = {lbl['id']: lbl['name'] for lbl in resp.get('labels', [])}
        return self._labels

    def _tags_from_label_ids(self, label_ids: Iterable[str]) -> Set[str]:
        labels = self._label_map()
        return {labels.get(label_id, label_id) for label_id in label_ids}

    def message_path(self, message_id: str) -> str:
        return f"gmail://{self.user_id}/{message_id}"

    def fetch_emails(self, label: Optional[str] = None, max_results=100) -> List[Email]:
        """Fetches the latest messages, optionally only those carrying `label`, in raw RFC 822 form."""
        list_kwargs = {'userId': self.user_id, 'maxResults': max_results}
        if label:
            label_id = self._label_id(label)
            if label_id is None:
                logger.info("Label '%s' does not exist, nothing to fetch", label)
                return []
            list_kwargs['labelIds'] = [label_id]

        try:
            response = self.service.users().messages().list(**list_kwargs).execute()
            emails = []
            for message in response.get('messages', []):
                msg = self.service.users().messages().get(
                    userId=self.user_id,
                    id=message['id'],
                    format='raw'
                ).execute()
                emails.append(self._parse_message(msg))
            return emails
        except HttpError as e:
            raise StorageError(f"Error fetching messages from Gmail: {e}") from e

    def _parse_message(self, msg: dict) -> Email:
        """Converts a raw-format Gmail API message into the standardized Email dataclass."""
        return Email(
            id=msg['id'],
            thread_id=msg['threadId'],
            path=self.message_path(msg['id']),
            tags=frozenset(self._tags_from_label_ids(msg.get('labelIds', []))),
            raw=base64.urlsafe_b64decode(msg['raw']),
        )

    def get_thread_tags(self, thread_id: str) -> Set[str]:
        """Union of the labels on every message of the thread."""
        try:
            thread = self.service.users().threads().get(
                userId=self.user_id, id=thread_id, format='minimal'
            ).execute()
        except HttpError as e:
            raise StorageError(f"Error reading thread {thread_id}: {e}") from e
        label_ids = set()
        for message in thread.get('messages', []):
            label_ids.update(message.get('labelIds', []))
        return self._tags_from_label_ids(label_ids)

    def save_tags(self, email: Email, tags: Iterable[str]):
        """Applies the difference between the fetched labels and `tags` to the message."""
        tags = set(tags)
        to_add = sorted(tags - email.tags)
        to_remove = sorted(email.tags - tags)
        if not to_add and not to_remove:
            return
        try:
            body = {
                'addLabelIds': [self._get_or_create_label_id(name) for name in to_add],
                'removeLabelIds': [lid for lid in (self._label_id(name) for name in to_remove) if lid],
            }
            self.service.users().messages().modify(userId=self.user_id, id=email.id, body=body).execute()
        except HttpError as e:
            raise StorageError(f"Error updating labels of message {email.id}: {e}", message_id=email.id) from e

    def delete_message(self, email: Email):
        """Moves the message to the trash."""
        try:
            self.service.users().messages().trash(userId=self.user_id, id=email.id).execute()
        except HttpError as e:
            raise StorageError(f"Error trashing message {email.id}: {e}", message_id=email.id) from e

    def _label_id(self, label_name: str) -> Optional[str]:
        """Return the label ID for `label_name` (exact match first, then case-insensitive), or None."""
        labels = self._label_map()
        for label_id, name in labels.items():
            if name == label_name:
                return label_id
        for label_id, name in labels.items():
            if name.lower() == label_name.lower():
                return label_id
        return None

    def _get_or_create_label_id(self, label_name: str) -> str:
        """Return the Gmail label ID for `label_name`, creating the label if missing."""
        label_id = self._label_id(label_name)
        if label_id is not None:
            return label_id

        body = {
            'name': label_name,
            'labelListVisibility': 'labelShow',
            'messageListVisibility': 'show'
        }
        created = self.service.users().labels().create(userId=self.user_id, body=body).execute()
        logger.info("Created label '%s' -> %s", label_name, created.get('id'))
        self._label_map()[created['id']] = label_name
        return created['id']
