"""machines, etcd clusters and events

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "machines",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("labels", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("annotations", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("owner_references", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("addresses", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("conditions", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("failure_domain", sa.String(length=128), nullable=True),
        sa.Column("deletion_timestamp", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_machines_name", "machines", ["name"], unique=True)

    op.create_table(
        "etcd_clusters",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("cluster_name", sa.String(length=128), nullable=False),
        sa.Column("deletion_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replicas", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("version", sa.String(length=64), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "infrastructure_template", sa.JSON(), nullable=False, server_default=sa.text("'{}'")
        ),
        sa.Column("etcdadm_config_spec", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("ready_replicas", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "init_machine_address", sa.String(length=256), nullable=False, server_default=sa.text("''")
        ),
        sa.Column("initialized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("creation_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("endpoint", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("ready", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("selector", sa.String(length=512), nullable=False, server_default=sa.text("''")),
        *_timestamps(),
    )
    op.create_index("ix_etcd_clusters_name", "etcd_clusters", ["name"], unique=True)
    op.create_index("ix_etcd_clusters_cluster_name", "etcd_clusters", ["cluster_name"])

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("level", sa.String(length=16), nullable=False),
        sa.Column("fields", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
    )
    op.create_index("ix_events_category_created_at", "events", ["category", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_events_category_created_at", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_etcd_clusters_cluster_name", table_name="etcd_clusters")
    op.drop_index("ix_etcd_clusters_name", table_name="etcd_clusters")
    op.drop_table("etcd_clusters")
    op.drop_index("ix_machines_name", table_name="machines")
    op.drop_table("machines")
