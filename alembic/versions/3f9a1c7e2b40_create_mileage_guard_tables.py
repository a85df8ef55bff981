"""create_mileage_guard_tables

Revision ID: 3f9a1c7e2b40
Revises:
Create Date: 2026-10-19 09:12:44.518302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9a1c7e2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONPayload = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    op.create_table('device_readings',
    sa.Column('reading_id', sa.String(length=32), nullable=False),
    sa.Column('device_id', sa.String(length=100), nullable=False),
    sa.Column('vin', sa.String(length=17), nullable=True),
    sa.Column('mileage', sa.Integer(), nullable=False),
    sa.Column('timestamp', sa.DateTime(), nullable=False),
    sa.Column('received_at', sa.DateTime(), nullable=False),
    sa.Column('payload', JSONPayload, nullable=False),
    sa.PrimaryKeyConstraint('reading_id')
    )
    op.create_index(op.f('ix_device_readings_device_id'), 'device_readings', ['device_id'], unique=False)
    op.create_index(op.f('ix_device_readings_vin'), 'device_readings', ['vin'], unique=False)
    op.create_index(op.f('ix_device_readings_timestamp'), 'device_readings', ['timestamp'], unique=False)

    op.create_table('trip_batches',
    sa.Column('batch_id', sa.String(length=150), nullable=False),
    sa.Column('device_id', sa.String(length=100), nullable=False),
    sa.Column('vehicle_id', sa.String(length=100), nullable=True),
    sa.Column('status', sa.String(length=30), nullable=False),
    sa.Column('start_time', sa.DateTime(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('payload', JSONPayload, nullable=False),
    sa.PrimaryKeyConstraint('batch_id')
    )
    op.create_index(op.f('ix_trip_batches_device_id'), 'trip_batches', ['device_id'], unique=False)
    op.create_index(op.f('ix_trip_batches_vehicle_id'), 'trip_batches', ['vehicle_id'], unique=False)
    op.create_index(op.f('ix_trip_batches_status'), 'trip_batches', ['status'], unique=False)
    op.create_index(op.f('ix_trip_batches_created_at'), 'trip_batches', ['created_at'], unique=False)
    op.create_index(
        'uq_trip_batches_one_active_per_device',
        'trip_batches',
        ['device_id'],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table('blockchain_submissions',
    sa.Column('batch_id', sa.String(length=150), nullable=False),
    sa.Column('submitted', sa.Boolean(), nullable=False),
    sa.Column('terminal', sa.Boolean(), nullable=False),
    sa.Column('next_retry_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('payload', JSONPayload, nullable=False),
    sa.PrimaryKeyConstraint('batch_id')
    )
    op.create_index(op.f('ix_blockchain_submissions_submitted'), 'blockchain_submissions', ['submitted'], unique=False)
    op.create_index(op.f('ix_blockchain_submissions_next_retry_at'), 'blockchain_submissions', ['next_retry_at'], unique=False)

    op.create_table('vehicle_mileage_history',
    sa.Column('vehicle_key', sa.String(length=120), nullable=False),
    sa.Column('trusted_mileage', sa.Integer(), nullable=False),
    sa.Column('trusted_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('payload', JSONPayload, nullable=False),
    sa.PrimaryKeyConstraint('vehicle_key')
    )

    op.create_table('device_batch_configs',
    sa.Column('device_id', sa.String(length=100), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('payload', JSONPayload, nullable=False),
    sa.PrimaryKeyConstraint('device_id')
    )

    op.create_table('reading_audit',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('reading_id', sa.String(length=32), nullable=False),
    sa.Column('device_id', sa.String(length=100), nullable=False),
    sa.Column('vehicle_key', sa.String(length=120), nullable=False),
    sa.Column('batch_id', sa.String(length=150), nullable=True),
    sa.Column('status', sa.String(length=30), nullable=False),
    sa.Column('recorded_at', sa.DateTime(), nullable=True),
    sa.Column('payload', JSONPayload, nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_reading_audit_reading_id'), 'reading_audit', ['reading_id'], unique=False)
    op.create_index(op.f('ix_reading_audit_device_id'), 'reading_audit', ['device_id'], unique=False)
    op.create_index(op.f('ix_reading_audit_vehicle_key'), 'reading_audit', ['vehicle_key'], unique=False)
    op.create_index(op.f('ix_reading_audit_batch_id'), 'reading_audit', ['batch_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_reading_audit_batch_id'), table_name='reading_audit')
    op.drop_index(op.f('ix_reading_audit_vehicle_key'), table_name='reading_audit')
    op.drop_index(op.f('ix_reading_audit_device_id'), table_name='reading_audit')
    op.drop_index(op.f('ix_reading_audit_reading_id'), table_name='reading_audit')
    op.drop_table('reading_audit')
    op.drop_table('device_batch_configs')
    op.drop_table('vehicle_mileage_history')
    op.drop_index(op.f('ix_blockchain_submissions_next_retry_at'), table_name='blockchain_submissions')
    op.drop_index(op.f('ix_blockchain_submissions_submitted'), table_name='blockchain_submissions')
    op.drop_table('blockchain_submissions')
    op.drop_index('uq_trip_batches_one_active_per_device', table_name='trip_batches')
    op.drop_index(op.f('ix_trip_batches_created_at'), table_name='trip_batches')
    op.drop_index(op.f('ix_trip_batches_status'), table_name='trip_batches')
    op.drop_index(op.f('ix_trip_batches_vehicle_id'), table_name='trip_batches')
    op.drop_index(op.f('ix_trip_batches_device_id'), table_name='trip_batches')
    op.drop_table('trip_batches')
    op.drop_index(op.f('ix_device_readings_timestamp'), table_name='device_readings')
    op.drop_index(op.f('ix_device_readings_vin'), table_name='device_readings')
    op.drop_index(op.f('ix_device_readings_device_id'), table_name='device_readings')
    op.drop_table('device_readings')
