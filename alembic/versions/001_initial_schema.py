"""Initial schema

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create call_attempts table
    op.create_table(
        'call_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('call_sid', sa.String(), nullable=True),
        sa.Column('line_id', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=False),
        sa.Column('contact_id', sa.Integer(), nullable=True),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('amd_enabled', sa.Boolean(), nullable=False),
        sa.Column('amd_timeout', sa.Integer(), nullable=False),
        sa.Column('amd_sensitivity', sa.String(), nullable=False),
        sa.Column('answered_by', sa.String(), nullable=True),
        sa.Column('amd_result', sa.String(), nullable=True),
        sa.Column('machine_detection_duration', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('disposition', sa.String(), nullable=True),
        sa.Column('dial_status', sa.String(), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=False),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_call_attempts_id'), 'call_attempts', ['id'], unique=False)
    op.create_index(op.f('ix_call_attempts_user_id'), 'call_attempts', ['user_id'], unique=False)
    op.create_index(op.f('ix_call_attempts_call_sid'), 'call_attempts', ['call_sid'], unique=True)
    op.create_index(op.f('ix_call_attempts_status'), 'call_attempts', ['status'], unique=False)

    # Create dialer_markers table
    op.create_table(
        'dialer_markers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('call_sid', sa.String(), nullable=True),
        sa.Column('value', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'key', name='uq_dialer_markers_user_key')
    )
    op.create_index(op.f('ix_dialer_markers_id'), 'dialer_markers', ['id'], unique=False)
    op.create_index(op.f('ix_dialer_markers_user_id'), 'dialer_markers', ['user_id'], unique=False)

    # Create webhook_events table
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_key', sa.String(), nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('call_sid', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_events_id'), 'webhook_events', ['id'], unique=False)
    op.create_index(op.f('ix_webhook_events_event_key'), 'webhook_events', ['event_key'], unique=True)
    op.create_index(op.f('ix_webhook_events_user_id'), 'webhook_events', ['user_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_webhook_events_user_id'), table_name='webhook_events')
    op.drop_index(op.f('ix_webhook_events_event_key'), table_name='webhook_events')
    op.drop_index(op.f('ix_webhook_events_id'), table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index(op.f('ix_dialer_markers_user_id'), table_name='dialer_markers')
    op.drop_index(op.f('ix_dialer_markers_id'), table_name='dialer_markers')
    op.drop_table('dialer_markers')
    op.drop_index(op.f('ix_call_attempts_status'), table_name='call_attempts')
    op.drop_index(op.f('ix_call_attempts_call_sid'), table_name='call_attempts')
    op.drop_index(op.f('ix_call_attempts_user_id'), table_name='call_attempts')
    op.drop_index(op.f('ix_call_attempts_id'), table_name='call_attempts')
    op.drop_table('call_attempts')
