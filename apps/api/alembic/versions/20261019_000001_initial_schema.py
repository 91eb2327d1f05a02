"""create photo enhancement schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_enhancements_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("storage_used_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("storage_limit_bytes", sa.BigInteger(), nullable=False, server_default=str(1024 * 1024 * 1024)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        sa.CheckConstraint("free_enhancements_used >= 0", name="ck_users_free_enhancements_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("photo_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("state", sa.String(), nullable=False, server_default="HELD"),
        sa.Column("balance_applied", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_reservations_user_id"), "credit_reservations", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_reservations_photo_id"), "credit_reservations", ["photo_id"], unique=False)
    op.create_index(op.f("ix_credit_reservations_state"), "credit_reservations", ["state"], unique=False)
    op.create_index(op.f("ix_credit_reservations_created_at"), "credit_reservations", ["created_at"], unique=False)

    op.create_table(
        "photos",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("original_asset_ref", sa.String(), nullable=False),
        sa.Column("original_mime_type", sa.String(), nullable=True),
        sa.Column("original_size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("enhanced_asset_ref", sa.String(), nullable=True),
        sa.Column("enhanced_mime_type", sa.String(), nullable=True),
        sa.Column("enhanced_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("enhancement_mode", sa.String(), nullable=False),
        sa.Column("credit_reservation_id", sa.String(), nullable=True),
        sa.Column("free_slot_held", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("charged_with", sa.String(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_reason", sa.String(), nullable=True),
        sa.Column("last_error_retryable", sa.Boolean(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["credit_reservation_id"], ["credit_reservations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_photos_owner_id"), "photos", ["owner_id"], unique=False)
    op.create_index(op.f("ix_photos_status"), "photos", ["status"], unique=False)
    op.create_index(op.f("ix_photos_credit_reservation_id"), "photos", ["credit_reservation_id"], unique=False)
    op.create_index(op.f("ix_photos_expires_at"), "photos", ["expires_at"], unique=False)
    op.create_index("ix_photos_status_started", "photos", ["status", "processing_started_at"], unique=False)
    op.create_index("ix_photos_owner_created", "photos", ["owner_id", "created_at"], unique=False)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("delta_credits", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("billing_provider", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_credit_ledger_user_id"), "credit_ledger", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_ledger_created_at"), "credit_ledger", ["created_at"], unique=False)

    op.create_table(
        "purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False, server_default="stripe"),
        sa.Column("provider_event_id", sa.String(), nullable=False),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("credits_granted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_event_id"),
    )
    op.create_index(op.f("ix_purchases_user_id"), "purchases", ["user_id"], unique=False)
    op.create_index(op.f("ix_purchases_payment_reference"), "purchases", ["payment_reference"], unique=False)
    op.create_index(op.f("ix_purchases_status"), "purchases", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_purchases_status"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_payment_reference"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_user_id"), table_name="purchases")
    op.drop_table("purchases")

    op.drop_index(op.f("ix_credit_ledger_created_at"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_user_id"), table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_index("ix_photos_owner_created", table_name="photos")
    op.drop_index("ix_photos_status_started", table_name="photos")
    op.drop_index(op.f("ix_photos_expires_at"), table_name="photos")
    op.drop_index(op.f("ix_photos_credit_reservation_id"), table_name="photos")
    op.drop_index(op.f("ix_photos_status"), table_name="photos")
    op.drop_index(op.f("ix_photos_owner_id"), table_name="photos")
    op.drop_table("photos")

    op.drop_index(op.f("ix_credit_reservations_created_at"), table_name="credit_reservations")
    op.drop_index(op.f("ix_credit_reservations_state"), table_name="credit_reservations")
    op.drop_index(op.f("ix_credit_reservations_photo_id"), table_name="credit_reservations")
    op.drop_index(op.f("ix_credit_reservations_user_id"), table_name="credit_reservations")
    op.drop_table("credit_reservations")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
