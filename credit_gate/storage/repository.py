"""
Repository pattern for data access.

Handles database operations for accounts, the append-only usage ledger,
allowance packs, applications and Smart Reply conversations.

Storage errors (sqlite3.Error) propagate unchanged; the accounting
components decide whether a failure opens or closes the gate.
"""

import sqlite3
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from .db import get_connection, immediate_transaction
from .models import (
    Account,
    Application,
    Conversation,
    ConversationMessage,
    UsageEvent,
    from_db_timestamp,
    from_units,
    to_db_timestamp,
    to_units,
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS account (
        account_id TEXT PRIMARY KEY,
        balance_units INTEGER NOT NULL DEFAULT 0 CHECK (balance_units >= 0),
        total_purchased_units INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL,
        category TEXT NOT NULL,
        scope_key TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_usage_event_lookup
        ON usage_event (account_id, category, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS allowance_pack (
        account_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        scope_key TEXT NOT NULL DEFAULT '',
        packs INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (account_id, feature, scope_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS purchase (
        reference TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        credit_units INTEGER NOT NULL,
        package_name TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS application (
        application_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        company TEXT,
        role TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation (
        conversation_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        message_type TEXT NOT NULL,
        application_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_message (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT NOT NULL REFERENCES conversation (conversation_id),
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        credit_units INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
]


def initialize_schema(db_path: str = "credit_gate.db") -> None:
    """Create all tables if they don't exist.

    The usage_event table is an append-only ledger: rows are inserted and
    counted, never updated.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


class Repository:
    """Data access for the credit gate.

    Every balance mutation is a single conditional statement or a short
    IMMEDIATE transaction, so concurrent requests for the same account
    cannot drive a balance negative.
    """

    def __init__(self, db_path: str = "credit_gate.db"):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # -- accounts -----------------------------------------------------------

    def ensure_account(self, account_id: str, now: datetime) -> Account:
        """Create the account with a zero balance if it does not exist yet."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR IGNORE INTO account (account_id, created_at) VALUES (?, ?)",
                (account_id, to_db_timestamp(now)),
            )
            conn.commit()
            return self._fetch_account(conn, account_id)
        finally:
            conn.close()

    def get_account(self, account_id: str) -> Optional[Account]:
        conn = get_connection(self.db_path)
        try:
            return self._fetch_account(conn, account_id)
        finally:
            conn.close()

    def deduct_balance(self, account_id: str, units: int) -> Optional[int]:
        """Subtract units only if the balance covers them.

        Returns:
            New balance in units, or None when the balance was insufficient
            (or the account does not exist). Nothing is written in that case.
        """
        with immediate_transaction(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE account SET balance_units = balance_units - ?
                WHERE account_id = ? AND balance_units >= ?
                """,
                (units, account_id, units),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return None
            return self._fetch_balance_units(conn, account_id)

    def credit_balance(self, account_id: str, units: int) -> Optional[int]:
        """Add units to the balance. Returns the new balance, None if no account."""
        with immediate_transaction(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE account SET balance_units = balance_units + ? WHERE account_id = ?",
                (units, account_id),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return None
            return self._fetch_balance_units(conn, account_id)

    def record_purchase(
        self,
        account_id: str,
        units: int,
        reference: str,
        package_name: Optional[str],
        now: datetime,
    ) -> Optional[int]:
        """Grant purchased credits exactly once per reference.

        The purchase row, the balance increase and the lifetime total are
        written in one transaction.

        Returns:
            New balance in units, or None if the reference was already applied.
        """
        with immediate_transaction(self.db_path) as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO purchase (reference, account_id, credit_units, package_name, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (reference, account_id, units, package_name, to_db_timestamp(now)),
                )
            except sqlite3.IntegrityError:
                conn.rollback()
                return None
            conn.execute(
                "INSERT OR IGNORE INTO account (account_id, created_at) VALUES (?, ?)",
                (account_id, to_db_timestamp(now)),
            )
            conn.execute(
                """
                UPDATE account
                SET balance_units = balance_units + ?,
                    total_purchased_units = total_purchased_units + ?
                WHERE account_id = ?
                """,
                (units, units, account_id),
            )
            return self._fetch_balance_units(conn, account_id)

    # -- usage ledger -------------------------------------------------------

    def insert_usage_event(self, event: UsageEvent) -> None:
        """Append a single usage event. Events are never modified afterwards."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO usage_event (account_id, category, scope_key, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (event.account_id, event.category, event.scope_key, to_db_timestamp(event.created_at)),
            )
            conn.commit()
        finally:
            conn.close()

    def count_usage_events(
        self,
        account_id: str,
        category: str,
        since: Optional[datetime] = None,
        scope_key: Optional[str] = None,
    ) -> int:
        """Count events for an account and category.

        Args:
            account_id: Owning account
            category: Usage category value
            since: Optional lower time bound (inclusive); None counts all time
            scope_key: Optional scope filter; None counts every scope
        """
        query = "SELECT COUNT(*) FROM usage_event WHERE account_id = ? AND category = ?"
        params: list = [account_id, category]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_db_timestamp(since))
        if scope_key is not None:
            query += " AND scope_key = ?"
            params.append(scope_key)

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, params).fetchone()
            return row[0] or 0
        finally:
            conn.close()

    def oldest_usage_event_since(
        self, account_id: str, category: str, since: datetime
    ) -> Optional[datetime]:
        """Timestamp of the oldest event at or after `since`, if any."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT MIN(created_at) FROM usage_event
                WHERE account_id = ? AND category = ? AND created_at >= ?
                """,
                (account_id, category, to_db_timestamp(since)),
            ).fetchone()
            if row is None or row[0] is None:
                return None
            return from_db_timestamp(row[0])
        finally:
            conn.close()

    def fetch_usage_events(
        self, account_id: str, category: Optional[str] = None, limit: int = 100
    ) -> List[UsageEvent]:
        """Recent usage events, newest first."""
        query = "SELECT account_id, category, scope_key, created_at FROM usage_event WHERE account_id = ?"
        params: list = [account_id]
        if category:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [
                UsageEvent(
                    account_id=row[0],
                    category=row[1],
                    scope_key=row[2],
                    created_at=from_db_timestamp(row[3]),
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    def delete_usage_events_before(self, category: str, before: datetime) -> int:
        """Prune events of one category older than `before`. Returns rows removed."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM usage_event WHERE category = ? AND created_at < ?",
                (category, to_db_timestamp(before)),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # -- allowance packs ----------------------------------------------------

    def get_pack_count(self, account_id: str, feature: str, scope_key: str = "") -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT packs FROM allowance_pack
                WHERE account_id = ? AND feature = ? AND scope_key = ?
                """,
                (account_id, feature, scope_key),
            ).fetchone()
            return row[0] if row else 0
        finally:
            conn.close()

    def purchase_pack(
        self, account_id: str, feature: str, scope_key: str, cost_units: int
    ) -> Optional[Tuple[int, int]]:
        """Deduct the pack cost and add one pack in a single transaction.

        Returns:
            (new balance units, pack count) or None if the balance was insufficient.
        """
        with immediate_transaction(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE account SET balance_units = balance_units - ?
                WHERE account_id = ? AND balance_units >= ?
                """,
                (cost_units, account_id, cost_units),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return None
            conn.execute(
                """
                INSERT INTO allowance_pack (account_id, feature, scope_key, packs)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (account_id, feature, scope_key) DO UPDATE SET packs = packs + 1
                """,
                (account_id, feature, scope_key),
            )
            packs = conn.execute(
                """
                SELECT packs FROM allowance_pack
                WHERE account_id = ? AND feature = ? AND scope_key = ?
                """,
                (account_id, feature, scope_key),
            ).fetchone()[0]
            return self._fetch_balance_units(conn, account_id), packs

    # -- applications and conversations --------------------------------------

    def create_application(
        self,
        account_id: str,
        now: datetime,
        company: Optional[str] = None,
        role: Optional[str] = None,
        application_id: Optional[str] = None,
    ) -> Application:
        application = Application(
            application_id=application_id or uuid.uuid4().hex,
            account_id=account_id,
            company=company,
            role=role,
            created_at=now,
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO application (application_id, account_id, company, role, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    application.application_id,
                    application.account_id,
                    application.company,
                    application.role,
                    to_db_timestamp(now),
                ),
            )
            conn.commit()
            return application
        finally:
            conn.close()

    def get_application(self, application_id: str, account_id: str) -> Optional[Application]:
        """Fetch an application only if it belongs to the account."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT application_id, account_id, company, role, created_at
                FROM application WHERE application_id = ? AND account_id = ?
                """,
                (application_id, account_id),
            ).fetchone()
            if row is None:
                return None
            return Application(
                application_id=row[0],
                account_id=row[1],
                company=row[2],
                role=row[3],
                created_at=from_db_timestamp(row[4]),
            )
        finally:
            conn.close()

    def create_conversation(
        self,
        account_id: str,
        message_type: str,
        now: datetime,
        application_id: Optional[str] = None,
    ) -> Conversation:
        conversation = Conversation(
            conversation_id=uuid.uuid4().hex,
            account_id=account_id,
            message_type=message_type,
            application_id=application_id,
            created_at=now,
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO conversation
                (conversation_id, account_id, message_type, application_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.conversation_id,
                    account_id,
                    message_type,
                    application_id,
                    to_db_timestamp(now),
                    to_db_timestamp(now),
                ),
            )
            conn.commit()
            return conversation
        finally:
            conn.close()

    def get_conversation(self, conversation_id: str, account_id: str) -> Optional[Conversation]:
        """Fetch a conversation only if it belongs to the account."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT conversation_id, account_id, message_type, application_id, created_at
                FROM conversation WHERE conversation_id = ? AND account_id = ?
                """,
                (conversation_id, account_id),
            ).fetchone()
            if row is None:
                return None
            return Conversation(
                conversation_id=row[0],
                account_id=row[1],
                message_type=row[2],
                application_id=row[3],
                created_at=from_db_timestamp(row[4]),
            )
        finally:
            conn.close()

    def add_messages(self, messages: List[ConversationMessage]) -> None:
        """Append messages to their conversations atomically and touch updated_at."""
        if not messages:
            return

        with immediate_transaction(self.db_path) as conn:
            for message in messages:
                conn.execute(
                    """
                    INSERT INTO conversation_message
                    (conversation_id, role, content, credit_units, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        message.conversation_id,
                        message.role,
                        message.content,
                        to_units(message.credits_used),
                        to_db_timestamp(message.created_at),
                    ),
                )
                conn.execute(
                    "UPDATE conversation SET updated_at = ? WHERE conversation_id = ?",
                    (to_db_timestamp(message.created_at), message.conversation_id),
                )

    def fetch_messages(self, conversation_id: str) -> List[ConversationMessage]:
        """Messages of a conversation, oldest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT conversation_id, role, content, created_at, credit_units
                FROM conversation_message WHERE conversation_id = ?
                ORDER BY id ASC
                """,
                (conversation_id,),
            ).fetchall()
            return [
                ConversationMessage(
                    conversation_id=row[0],
                    role=row[1],
                    content=row[2],
                    created_at=from_db_timestamp(row[3]),
                    credits_used=from_units(row[4]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def latest_message(self, conversation_id: str, role: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT content FROM conversation_message
                WHERE conversation_id = ? AND role = ?
                ORDER BY id DESC LIMIT 1
                """,
                (conversation_id, role),
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _fetch_balance_units(conn: sqlite3.Connection, account_id: str) -> int:
        row = conn.execute(
            "SELECT balance_units FROM account WHERE account_id = ?", (account_id,)
        ).fetchone()
        return row[0]

    @staticmethod
    def _fetch_account(conn: sqlite3.Connection, account_id: str) -> Optional[Account]:
        row = conn.execute(
            """
            SELECT account_id, balance_units, total_purchased_units, created_at
            FROM account WHERE account_id = ?
            """,
            (account_id,),
        ).fetchone()
        if row is None:
            return None
        return Account(
            account_id=row[0],
            balance=from_units(row[1]),
            total_credits_purchased=from_units(row[2]),
            created_at=from_db_timestamp(row[3]),
        )
