"""Initial schema - materials, generation tasks, questions.

Revision ID: 001_initial_schema
Revises:
Create Date: 2024-01-20

"""
from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Materials table
    op.create_table(
        "material",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("content", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Generation tasks table
    op.create_table(
        "generationtask",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("material_id", sa.Uuid(), nullable=False),
        sa.Column("requested_count", sa.Integer(), nullable=False),
        sa.Column("question_types", sa.JSON(), nullable=True),
        sa.Column("difficulty", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("knowledge_points", sa.JSON(), nullable=True),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("accepted_count", sa.Integer(), nullable=False, default=0),
        sa.Column("progress", sa.Integer(), nullable=False, default=0),
        sa.Column("attempts_used", sa.Integer(), nullable=False, default=0),
        sa.Column("generated_count", sa.Integer(), nullable=True),
        sa.Column("success_rate", sa.Float(), nullable=True),
        sa.Column("slot_retries", sa.JSON(), nullable=True),
        sa.Column("shortfall_slots", sa.JSON(), nullable=True),
        sa.Column("error", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("is_simulated", sa.Boolean(), nullable=False, default=False),
        sa.Column("provider_key", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("model_key", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("creator_id", sa.Uuid(), nullable=True),
        sa.ForeignKeyConstraint(["material_id"], ["material.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generationtask_status"), "generationtask", ["status"])
    op.create_index(op.f("ix_generationtask_creator_id"), "generationtask", ["creator_id"])

    # Questions table
    op.create_table(
        "question",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("task_id", sa.Uuid(), nullable=False),
        sa.Column("question_type", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("difficulty", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stem", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("correct_answer", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("source_excerpt", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("reasoning", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("conclusion", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("quality_score", sa.Float(), nullable=False),
        sa.Column("knowledge_point", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("slot", sa.Integer(), nullable=True),
        sa.Column("repair_actions", sa.JSON(), nullable=True),
        sa.Column("requires_human_review", sa.Boolean(), nullable=False, default=False),
        sa.Column("is_simulated", sa.Boolean(), nullable=False, default=False),
        sa.Column("resubmitted_from_id", sa.Uuid(), nullable=True),
        sa.Column("review_issues", sa.JSON(), nullable=True),
        sa.Column("review_warnings", sa.JSON(), nullable=True),
        sa.Column("review_suggestions", sa.JSON(), nullable=True),
        sa.Column("reviewer_comment", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("reviewer_id", sa.Uuid(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["generationtask.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["resubmitted_from_id"], ["question.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_question_status"), "question", ["status"])
    op.create_index(op.f("ix_question_task_id"), "question", ["task_id"])


def downgrade() -> None:
    op.drop_index(op.f("ix_question_task_id"), table_name="question")
    op.drop_index(op.f("ix_question_status"), table_name="question")
    op.drop_table("question")
    op.drop_index(op.f("ix_generationtask_creator_id"), table_name="generationtask")
    op.drop_index(op.f("ix_generationtask_status"), table_name="generationtask")
    op.drop_table("generationtask")
    op.drop_table("material")
