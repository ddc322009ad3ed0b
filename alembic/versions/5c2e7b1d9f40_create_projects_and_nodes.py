"""Create projects and nodes tables

Revision ID: 5c2e7b1d9f40
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c2e7b1d9f40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the project registry and the node tree table."""
    op.create_table(
        "projects",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_projects_id", "projects", ["id"])

    op.create_table(
        "nodes",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column(
            "project_id", sa.String(255), sa.ForeignKey("projects.id"), nullable=False
        ),
        # Plain column: children may outlive their parent
        sa.Column("parent_id", sa.String(255), nullable=True),
        sa.Column("order_key", sa.String(64), nullable=False, server_default="0"),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("link_text", sa.Text(), nullable=True),
        sa.Column("youtube_link", sa.Text(), nullable=True),
        sa.Column("time_marker", sa.String(64), nullable=True),
        sa.Column("is_discussion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("images_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_nodes_id", "nodes", ["id"])
    op.create_index("ix_nodes_project_id", "nodes", ["project_id"])
    op.create_index("ix_nodes_parent_id", "nodes", ["parent_id"])
    op.create_index("ix_nodes_project_parent", "nodes", ["project_id", "parent_id"])


def downgrade() -> None:
    """Drop both tables."""
    op.drop_index("ix_nodes_project_parent", table_name="nodes")
    op.drop_index("ix_nodes_parent_id", table_name="nodes")
    op.drop_index("ix_nodes_project_id", table_name="nodes")
    op.drop_index("ix_nodes_id", table_name="nodes")
    op.drop_table("nodes")
    op.drop_index("ix_projects_id", table_name="projects")
    op.drop_table("projects")
