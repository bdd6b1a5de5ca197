"""Create documents table for the hierarchical document store.

Revision ID: create_documents_table
Revises:
Create Date: 2026-10-19

One row per leaf document, keyed by its slash separated path:
- return_records/<id>
- ncr_reports/<id>
- counters/<family>_counter
- system_config
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = 'create_documents_table'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create documents table."""

    # Check if table already exists (init_db may have created it)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if 'documents' in inspector.get_table_names():
        print("documents table already exists, skipping...")
        return

    op.create_table(
        'documents',
        sa.Column('path', sa.String(512), primary_key=True),
        sa.Column('value', sa.JSON().with_variant(JSONB(), 'postgresql'), nullable=True),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    print("Created documents table")


def downgrade() -> None:
    """Drop documents table."""
    op.drop_table('documents')
