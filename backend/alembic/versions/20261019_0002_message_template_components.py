"""Store template components on chat messages."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("chat_messages", sa.Column("template_components_json", sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column("chat_messages", "template_components_json")
