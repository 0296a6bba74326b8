"""SQLite database operations"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from esign_workflow.utils.config import get_settings

# Columns per table, in insert order
TABLE_COLUMNS = {
    "contracts": (
        "id", "title", "body", "variables", "template_name",
        "external_signer_name", "external_signer_email", "external_signer_document",
        "status", "created_by", "created_at", "updated_at", "finalized_at",
        "document_url", "document_hash", "document_storage",
    ),
    "signatures": (
        "id", "contract_id", "role", "signer_name", "signer_email", "signer_document",
        "ip_address", "user_agent", "signed_at", "certificate", "signature_hash", "token_id",
    ),
    "verification_tokens": (
        "id", "contract_id", "code", "destination_email", "issued_at", "valid_until",
        "used_at", "used_ip", "used_user_agent",
    ),
    "audit_entries": (
        "id", "contract_id", "kind", "description", "payload", "evidence",
        "actor_id", "timestamp",
    ),
    "evidence_records": (
        "id", "contract_id", "kind", "payload", "content_hash", "collected_at", "valid",
    ),
    "document_jobs": (
        "id", "contract_id", "status", "attempts", "max_attempts", "error_message",
        "document_url", "document_hash", "size_bytes", "lease_expires_at",
        "next_attempt_at", "created_at", "updated_at", "processed_at",
    ),
    "reminders": (
        "id", "contract_id", "kind", "due_at", "sent", "sent_at", "attempts",
        "cancelled_at", "cancel_reason", "created_at",
    ),
}

JSON_COLUMNS = {"variables", "certificate", "payload", "evidence"}
BOOL_COLUMNS = {"sent", "valid"}


def get_db_path() -> Path:
    """Get database path from settings"""
    settings = get_settings()
    return Path(settings.database_path)


@contextmanager
def get_connection():
    """Get a database connection as context manager"""
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Initialize database with schema"""
    with get_connection() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS contracts (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                body TEXT NOT NULL,
                variables TEXT DEFAULT '{}',
                template_name TEXT,
                external_signer_name TEXT NOT NULL,
                external_signer_email TEXT NOT NULL,
                external_signer_document TEXT,
                status TEXT NOT NULL DEFAULT 'draft',
                created_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                finalized_at TEXT,
                document_url TEXT,
                document_hash TEXT,
                document_storage TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_contracts_status
            ON contracts(status)
        """)

        # One signature per role
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS signatures (
                id TEXT PRIMARY KEY,
                contract_id TEXT NOT NULL REFERENCES contracts(id),
                role TEXT NOT NULL,
                signer_name TEXT NOT NULL,
                signer_email TEXT,
                signer_document TEXT,
                ip_address TEXT,
                user_agent TEXT,
                signed_at TEXT NOT NULL,
                certificate TEXT,
                signature_hash TEXT,
                token_id TEXT,
                UNIQUE(contract_id, role)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS verification_tokens (
                id TEXT PRIMARY KEY,
                contract_id TEXT NOT NULL REFERENCES contracts(id),
                code TEXT NOT NULL,
                destination_email TEXT NOT NULL,
                issued_at TEXT NOT NULL,
                valid_until TEXT NOT NULL,
                used_at TEXT,
                used_ip TEXT,
                used_user_agent TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tokens_contract_code
            ON verification_tokens(contract_id, code)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_entries (
                id TEXT PRIMARY KEY,
                contract_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                description TEXT NOT NULL,
                payload TEXT NOT NULL,
                evidence TEXT NOT NULL,
                actor_id TEXT,
                timestamp TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_contract_time
            ON audit_entries(contract_id, timestamp)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS evidence_records (
                id TEXT PRIMARY KEY,
                contract_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                collected_at TEXT NOT NULL,
                valid INTEGER NOT NULL DEFAULT 1
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_evidence_contract
            ON evidence_records(contract_id)
        """)

        # Ledger tables are append-only
        for table in ("audit_entries", "evidence_records", "signatures"):
            for action in ("UPDATE", "DELETE"):
                cursor.execute(f"""
                    CREATE TRIGGER IF NOT EXISTS trg_{table}_no_{action.lower()}
                    BEFORE {action} ON {table}
                    BEGIN
                        SELECT RAISE(ABORT, '{table} is append-only');
                    END
                """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS document_jobs (
                id TEXT PRIMARY KEY,
                contract_id TEXT NOT NULL REFERENCES contracts(id),
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                error_message TEXT,
                document_url TEXT,
                document_hash TEXT,
                size_bytes INTEGER,
                lease_expires_at TEXT,
                next_attempt_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                processed_at TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status_created
            ON document_jobs(status, created_at)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reminders (
                id TEXT PRIMARY KEY,
                contract_id TEXT NOT NULL REFERENCES contracts(id),
                kind TEXT NOT NULL,
                due_at TEXT NOT NULL,
                sent INTEGER NOT NULL DEFAULT 0,
                sent_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                cancelled_at TEXT,
                cancel_reason TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_reminders_due
            ON reminders(sent, cancelled_at, due_at)
        """)


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value, ensure_ascii=False)
    if column in BOOL_COLUMNS and value is not None:
        return 1 if value else 0
    return value


def _decode(row: sqlite3.Row) -> dict:
    data = dict(row)
    for column in JSON_COLUMNS & data.keys():
        if data[column] is not None:
            data[column] = json.loads(data[column])
    for column in BOOL_COLUMNS & data.keys():
        if data[column] is not None:
            data[column] = bool(data[column])
    return data


def _assignments(fields: Dict[str, Any], table: str) -> tuple[str, list]:
    columns = [c for c in fields if c in TABLE_COLUMNS[table] and c != "id"]
    if not columns:
        raise ValueError(f"No updatable columns given for {table}")
    clause = ", ".join(f"{c} = ?" for c in columns)
    return clause, [_encode(c, fields[c]) for c in columns]


def insert_row(conn: sqlite3.Connection, table: str, row: dict) -> str:
    """Insert one row; unknown keys are ignored."""
    columns = [c for c in TABLE_COLUMNS[table] if c in row]
    placeholders = ", ".join("?" for _ in columns)
    conn.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        [_encode(c, row[c]) for c in columns],
    )
    return row["id"]


def update_row(
    conn: sqlite3.Connection,
    table: str,
    row_id: str,
    fields: Dict[str, Any],
    where: str = "",
    params: Iterable[Any] = (),
) -> int:
    """Patch the given columns of one row. Returns rows changed."""
    clause, values = _assignments(fields, table)
    sql = f"UPDATE {table} SET {clause} WHERE id = ?"
    if where:
        sql += f" AND {where}"
    cursor = conn.execute(sql, [*values, row_id, *params])
    return cursor.rowcount


def fetch_one(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> Optional[dict]:
    row = conn.execute(sql, list(params)).fetchone()
    return _decode(row) if row else None


def fetch_all(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> List[dict]:
    return [_decode(row) for row in conn.execute(sql, list(params)).fetchall()]
