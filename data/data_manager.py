import logging
import os
import sqlite3
from typing import Iterable, List, Optional, Set

from models.email import Email
from rules.errors import StorageError

logger = logging.getLogger(__name__)


class DBManager:
    """Local mail index: message locations, thread membership and tags."""

    def __init__(self, db_name='email_data.db'):
        self.db_name = db_name
        self.conn = None
        self.connect()
        self.initialize_db()

    def connect(self):
        """Establishes the connection to the SQLite database."""
        try:
            self.conn = sqlite3.connect(self.db_name)
        except sqlite3.Error as e:
            raise StorageError(f"Error connecting to database {self.db_name}: {e}") from e

    def initialize_db(self):
        """Creates the 'messages' and 'tags' tables if they don't already exist."""
        CREATE_MESSAGES_SQL = """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            thread_id TEXT NOT NULL,
            path TEXT NOT NULL
        );
        """
        CREATE_TAGS_SQL = """
        CREATE TABLE IF NOT EXISTS tags (
            message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            tag TEXT NOT NULL,
            PRIMARY KEY (message_id, tag)
        );
        """
        cursor = self.conn.cursor()
        cursor.execute(CREATE_MESSAGES_SQL)
        cursor.execute(CREATE_TAGS_SQL)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id)")
        self.conn.commit()
        logger.debug("Database schema ensured in %s", self.db_name)

    def save_email(self, email: Email):
        """Inserts a new message with its tags, or ignores it if it already exists."""
        INSERT_SQL = "INSERT OR IGNORE INTO messages (id, thread_id, path) VALUES (?, ?, ?)"
        try:
            with self.conn:
                cursor = self.conn.cursor()
                cursor.execute(INSERT_SQL, (email.id, email.thread_id, email.path))
                if cursor.rowcount:
                    cursor.executemany("INSERT OR IGNORE INTO tags (message_id, tag) VALUES (?, ?)",
                                       [(email.id, tag) for tag in sorted(email.tags)])
        except sqlite3.Error as e:
            raise StorageError(f"Error saving message {email.id}: {e}", message_id=email.id) from e

    def _tags_of(self, message_id: str) -> Set[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT tag FROM tags WHERE message_id = ?", (message_id,))
        return {row[0] for row in cursor.fetchall()}

    def get_emails(self, tag: Optional[str] = None) -> List[Email]:
        """Retrieves messages, optionally only those carrying `tag`, converting rows to Email dataclasses."""
        if tag is None:
            SELECT_SQL = "SELECT id, thread_id, path FROM messages ORDER BY rowid"
            params = ()
        else:
            SELECT_SQL = """
            SELECT m.id, m.thread_id, m.path FROM messages m
            JOIN tags t ON t.message_id = m.id
            WHERE t.tag = ? ORDER BY m.rowid
            """
            params = (tag,)
        try:
            cursor = self.conn.cursor()
            cursor.execute(SELECT_SQL, params)
            rows = cursor.fetchall()
            return [Email(id=row[0], thread_id=row[1], path=row[2], tags=frozenset(self._tags_of(row[0])))
                    for row in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Error reading messages: {e}") from e

    def get_email(self, message_id: str) -> Optional[Email]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT id, thread_id, path FROM messages WHERE id = ?", (message_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return Email(id=row[0], thread_id=row[1], path=row[2], tags=frozenset(self._tags_of(row[0])))

    def get_all_ids(self) -> List[str]:
        """Return a list of all stored message IDs."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT id FROM messages")
        rows = cursor.fetchall()
        return [r[0] for r in rows]

    def get_thread_tags(self, thread_id: str) -> Set[str]:
        """Union of the tags of every message in the thread."""
        SELECT_SQL = """
        SELECT DISTINCT t.tag FROM tags t
        JOIN messages m ON m.id = t.message_id
        WHERE m.thread_id = ?
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute(SELECT_SQL, (thread_id,))
            return {row[0] for row in cursor.fetchall()}
        except sqlite3.Error as e:
            raise StorageError(f"Error reading tags of thread {thread_id}: {e}") from e

    def save_tags(self, email: Email, tags: Iterable[str]):
        """Replaces the stored tag set of a message."""
        try:
            with self.conn:
                cursor = self.conn.cursor()
                cursor.execute("DELETE FROM tags WHERE message_id = ?", (email.id,))
                cursor.executemany("INSERT INTO tags (message_id, tag) VALUES (?, ?)",
                                   [(email.id, tag) for tag in sorted(set(tags))])
        except sqlite3.Error as e:
            raise StorageError(f"Error saving tags of message {email.id}: {e}", message_id=email.id) from e

    def add_tag(self, message_id: str, tag: str):
        """Adds `tag` to a single message, e.g. to queue it for filtering again."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("INSERT OR IGNORE INTO tags (message_id, tag) VALUES (?, ?)", (message_id, tag))
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Error tagging message {message_id}: {e}", message_id=message_id) from e

    def add_tag_all(self, tag: str):
        """Adds `tag` to every stored message."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("INSERT OR IGNORE INTO tags (message_id, tag) SELECT id, ? FROM messages", (tag,))
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Error tagging all messages: {e}") from e

    def delete_message(self, email: Email, remove_file: bool = True):
        """Drops a message from the index and, by default, deletes its file."""
        try:
            with self.conn:
                cursor = self.conn.cursor()
                cursor.execute("DELETE FROM tags WHERE message_id = ?", (email.id,))
                cursor.execute("DELETE FROM messages WHERE id = ?", (email.id,))
        except sqlite3.Error as e:
            raise StorageError(f"Error deleting message {email.id}: {e}", message_id=email.id) from e

        if remove_file:
            try:
                os.remove(email.path)
            except FileNotFoundError:
                logger.warning("File of message %s was already gone: %s", email.id, email.path)
            except OSError as e:
                raise StorageError(f"Error removing file {email.path}: {e}", message_id=email.id) from e

    def close(self):
        """Closes the database connection."""
        if self.conn:
            self.conn.close()
