"""create_audit_chain_tables

Revision ID: 3f9a1c2e7b40
Revises:
Create Date: 2026-10-17 09:12:44.518203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2e7b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

GENESIS_HASH = "0" * 64


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    id_type = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

    op.create_table(
        "audit_events",
        sa.Column("id", id_type, autoincrement=False, nullable=False),
        sa.Column("tenant_id", sa.String(length=64)),
        sa.Column("actor_user_id", sa.String(length=64)),
        sa.Column("actor_email", sa.String(length=255)),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=100)),
        sa.Column("entity_id", sa.String(length=128)),
        sa.Column("details", sa.JSON().with_variant(postgresql.JSONB(), "postgresql")),
        sa.Column("ip_address", sa.String(length=64)),
        sa.Column("user_agent", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("prev_hash", sa.String(length=64), nullable=False),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("hash"),
    )
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_actor_email", "audit_events", ["actor_email"])
    op.create_index("ix_audit_events_action", "audit_events", ["action"])
    op.create_index(
        "ix_audit_events_tenant_created", "audit_events", ["tenant_id", "created_at"]
    )

    op.create_table(
        "audit_chain_head",
        sa.Column("id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("last_id", id_type, nullable=False),
        sa.Column("last_hash", sa.String(length=64), nullable=False),
        sa.Column("last_created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.execute(
        "INSERT INTO audit_chain_head (id, last_id, last_hash) "
        f"VALUES (1, 0, '{GENESIS_HASH}')"
    )

    op.create_table(
        "audit_daily_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("start_id", id_type),
        sa.Column("end_id", id_type),
        sa.Column("end_hash", sa.String(length=64)),
        sa.Column("events_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_created_at", sa.DateTime(timezone=True)),
        sa.Column("snapshot_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "snapshot_date", name="uq_audit_snapshot_day"),
    )

    op.create_table(
        "audit_verify_checkpoints",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("verified_id", id_type, nullable=False),
        sa.Column("verified_hash", sa.String(length=64), nullable=False),
        sa.Column("checked", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_audit_verify_checkpoints_verified_id",
        "audit_verify_checkpoints",
        ["verified_id"],
    )

    if _is_postgres():
        # Insert-only at the storage level, independent of the ORM guards
        op.execute(
            """
            CREATE OR REPLACE FUNCTION public.reject_audit_event_mutation()
            RETURNS trigger
            AS $$
            BEGIN
                RAISE EXCEPTION 'audit_events is append-only (% rejected)', TG_OP
                    USING ERRCODE = 'insufficient_privilege';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            DROP TRIGGER IF EXISTS trg_audit_events_immutable
                ON public.audit_events
            """
        )
        op.execute(
            """
            CREATE TRIGGER trg_audit_events_immutable
            BEFORE UPDATE OR DELETE
                ON public.audit_events
            FOR EACH ROW
            EXECUTE FUNCTION public.reject_audit_event_mutation()
            """
        )
        op.execute(
            """
            CREATE TRIGGER trg_audit_events_no_truncate
            BEFORE TRUNCATE
                ON public.audit_events
            FOR EACH STATEMENT
            EXECUTE FUNCTION public.reject_audit_event_mutation()
            """
        )


def downgrade() -> None:
    if _is_postgres():
        op.execute(
            """
            DROP TRIGGER IF EXISTS trg_audit_events_no_truncate
                ON public.audit_events
            """
        )
        op.execute(
            """
            DROP TRIGGER IF EXISTS trg_audit_events_immutable
                ON public.audit_events
            """
        )
        op.execute(
            """
            DROP FUNCTION IF EXISTS public.reject_audit_event_mutation()
            """
        )

    op.drop_index("ix_audit_verify_checkpoints_verified_id", table_name="audit_verify_checkpoints")
    op.drop_table("audit_verify_checkpoints")
    op.drop_table("audit_daily_snapshots")
    op.drop_table("audit_chain_head")
    op.drop_index("ix_audit_events_tenant_created", table_name="audit_events")
    op.drop_index("ix_audit_events_action", table_name="audit_events")
    op.drop_index("ix_audit_events_actor_email", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_table("audit_events")
