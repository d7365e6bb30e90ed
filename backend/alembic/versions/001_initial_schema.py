"""Initial schema - JSON document table for tasks, schedule entries and users

Revision ID: 001
Revises: None
Create Date: 2025-05-12

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            data TEXT NOT NULL DEFAULT '{}',
            PRIMARY KEY (collection, id)
        )
    """))

    # Overdue sweep: status == ONGOING and due_at <= now, ordered by due_at
    conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_documents_status_due_at
        ON documents (collection, json_extract(data, '$.status'), json_extract(data, '$.due_at'))
    """))

    # Schedule notifier: start_at in [now, now + 1 minute)
    conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_documents_start_at
        ON documents (collection, json_extract(data, '$.start_at'))
    """))

    conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_documents_user_id
        ON documents (collection, json_extract(data, '$.user_id'))
    """))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP INDEX IF EXISTS ix_documents_user_id"))
    conn.execute(text("DROP INDEX IF EXISTS ix_documents_start_at"))
    conn.execute(text("DROP INDEX IF EXISTS ix_documents_status_due_at"))
    conn.execute(text("DROP TABLE IF EXISTS documents"))
