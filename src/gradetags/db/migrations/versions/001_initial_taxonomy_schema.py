"""Initial taxonomy schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Create grading platform tables, state machines, dictionaries and aggregates."""
    # Grading platform tables (read by the pipeline)
    op.create_table(
        "assignments",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("domain", sa.String(128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_assignments_owner_id", "assignments", ["owner_id"])
    op.create_index("ix_assignments_domain", "assignments", ["domain"])

    op.create_table(
        "submissions",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("assignment_id", sa.String(64), nullable=False),
        sa.Column("student_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), server_default="pending", nullable=False),
        sa.Column("grading_result", postgresql.JSONB(), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_submissions_owner_id", "submissions", ["owner_id"])
    op.create_index("ix_submissions_assignment_id", "submissions", ["assignment_id"])
    op.create_index(
        "ix_submissions_owner_assignment", "submissions", ["owner_id", "assignment_id"]
    )

    # Per-assignment debounce state
    op.create_table(
        "assignment_tag_state",
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("assignment_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), server_default="idle", nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=True),
        sa.Column("window_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_generated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("dirty", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("manual_locked", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("prompt_version", sa.String(32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("owner_id", "assignment_id"),
    )
    op.create_index("ix_assignment_tag_state_status", "assignment_tag_state", ["status"])
    op.create_index(
        "ix_assignment_tag_state_next_run_at", "assignment_tag_state", ["next_run_at"]
    )

    # Tag dictionary
    op.create_table(
        "tag_dictionary",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("label", sa.String(255), nullable=False),
        sa.Column("normalized_label", sa.String(255), nullable=False),
        sa.Column("status", sa.String(32), server_default="active", nullable=False),
        sa.Column("merged_to_tag_id", sa.UUID(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["merged_to_tag_id"], ["tag_dictionary.id"], ondelete="SET NULL"
        ),
    )
    op.create_index("ix_tag_dictionary_owner_id", "tag_dictionary", ["owner_id"])
    op.create_index(
        "ix_tag_dictionary_owner_normalized",
        "tag_dictionary",
        ["owner_id", "normalized_label"],
    )
    # Normalized labels are unique among active entries only
    op.create_index(
        "uq_tag_dictionary_active_label",
        "tag_dictionary",
        ["owner_id", "normalized_label"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "tag_dictionary_state",
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), server_default="idle", nullable=False),
        sa.Column("dirty", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("window_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_merged_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("prompt_version", sa.String(32), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_index("ix_tag_dictionary_state_status", "tag_dictionary_state", ["status"])

    # Derived aggregates
    op.create_table(
        "assignment_tag_aggregates",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("assignment_id", sa.String(64), nullable=False),
        sa.Column("tag_label", sa.String(255), nullable=False),
        sa.Column("tag_count", sa.Integer(), nullable=False),
        sa.Column("examples", postgresql.JSONB(), nullable=True),
        sa.Column("generated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("prompt_version", sa.String(32), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "owner_id", "assignment_id", "tag_label", name="uq_assignment_tag_aggregate"
        ),
    )
    op.create_index(
        "ix_assignment_tag_aggregates_owner_id", "assignment_tag_aggregates", ["owner_id"]
    )
    op.create_index(
        "ix_assignment_tag_aggregates_assignment_id",
        "assignment_tag_aggregates",
        ["assignment_id"],
    )

    op.create_table(
        "domain_tag_aggregates",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("domain", sa.String(128), nullable=False),
        sa.Column("tag_label", sa.String(255), nullable=False),
        sa.Column("tag_count", sa.Integer(), nullable=False),
        sa.Column("assignment_count", sa.Integer(), nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=False),
        sa.Column("generated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("prompt_version", sa.String(32), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "owner_id", "domain", "tag_label", name="uq_domain_tag_aggregate"
        ),
    )
    op.create_index(
        "ix_domain_tag_aggregates_owner_id", "domain_tag_aggregates", ["owner_id"]
    )

    # Ability layer
    op.create_table(
        "ability_dictionary",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("label", sa.String(255), nullable=False),
        sa.Column("normalized_label", sa.String(255), nullable=False),
        sa.Column("status", sa.String(32), server_default="active", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "owner_id", "normalized_label", name="uq_ability_dictionary_label"
        ),
    )
    op.create_index("ix_ability_dictionary_owner_id", "ability_dictionary", ["owner_id"])

    op.create_table(
        "tag_ability_map",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("tag_id", sa.UUID(), nullable=False),
        sa.Column("ability_id", sa.UUID(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("source", sa.String(16), server_default="ai", nullable=False),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["tag_id"], ["tag_dictionary.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["ability_id"], ["ability_dictionary.id"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint(
            "owner_id", "tag_id", "ability_id", name="uq_tag_ability_mapping"
        ),
    )
    op.create_index("ix_tag_ability_map_owner_id", "tag_ability_map", ["owner_id"])

    op.create_table(
        "ability_aggregates",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("ability_id", sa.UUID(), nullable=False),
        sa.Column("total_count", sa.Float(), nullable=False),
        sa.Column("assignment_count", sa.Integer(), nullable=False),
        sa.Column("domain_count", sa.Integer(), nullable=False),
        sa.Column("generated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("prompt_version", sa.String(32), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["ability_id"], ["ability_dictionary.id"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint("owner_id", "ability_id", name="uq_ability_aggregate"),
    )
    op.create_index("ix_ability_aggregates_owner_id", "ability_aggregates", ["owner_id"])


def downgrade() -> None:
    """Drop every table in reverse dependency order."""
    op.drop_table("ability_aggregates")
    op.drop_table("tag_ability_map")
    op.drop_table("ability_dictionary")
    op.drop_table("domain_tag_aggregates")
    op.drop_table("assignment_tag_aggregates")
    op.drop_table("tag_dictionary_state")
    op.drop_index("uq_tag_dictionary_active_label", table_name="tag_dictionary")
    op.drop_table("tag_dictionary")
    op.drop_table("assignment_tag_state")
    op.drop_table("submissions")
    op.drop_table("assignments")
