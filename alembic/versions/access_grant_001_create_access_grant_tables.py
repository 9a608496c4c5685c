"""create access grant tables

Revision ID: access_grant_001
Revises:
Create Date: 2026-01-12

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'access_grant_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Patient QR codes / access keys
    op.create_table(
        'access_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('token', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_access_tokens_user_id'), 'access_tokens', ['user_id'], unique=False)
    op.create_index(op.f('ix_access_tokens_token'), 'access_tokens', ['token'], unique=True)
    op.create_index(op.f('ix_access_tokens_status'), 'access_tokens', ['status'], unique=False)
    op.create_index(op.f('ix_access_tokens_expires_at'), 'access_tokens', ['expires_at'], unique=False)
    op.create_index('ix_access_tokens_status_expiry', 'access_tokens', ['status', 'expires_at'], unique=False)
    # At most one active token per patient
    op.create_index(
        'uq_access_tokens_one_active_per_user',
        'access_tokens',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    # Doctor sessions
    op.create_table(
        'doctor_sessions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('patient_id', sa.String(), nullable=False),
        sa.Column('doctor_id', sa.String(), nullable=False),
        sa.Column('token_id', sa.String(), nullable=True),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['token_id'], ['access_tokens.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_doctor_sessions_patient_id'), 'doctor_sessions', ['patient_id'], unique=False)
    op.create_index(op.f('ix_doctor_sessions_doctor_id'), 'doctor_sessions', ['doctor_id'], unique=False)
    op.create_index(op.f('ix_doctor_sessions_expires_at'), 'doctor_sessions', ['expires_at'], unique=False)
    op.create_index(
        'ix_doctor_sessions_doctor_live', 'doctor_sessions', ['doctor_id', 'is_active', 'expires_at'], unique=False
    )

    # Append-only audit trail
    op.create_table(
        'access_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('patient_id', sa.String(), nullable=True),
        sa.Column('doctor_id', sa.String(), nullable=True),
        sa.Column('admin_id', sa.String(), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_access_logs_patient_id'), 'access_logs', ['patient_id'], unique=False)
    op.create_index(op.f('ix_access_logs_doctor_id'), 'access_logs', ['doctor_id'], unique=False)
    op.create_index(op.f('ix_access_logs_action'), 'access_logs', ['action'], unique=False)
    op.create_index(op.f('ix_access_logs_created_at'), 'access_logs', ['created_at'], unique=False)
    op.create_index('ix_access_logs_patient_date', 'access_logs', ['patient_id', 'created_at'], unique=False)


def downgrade():
    op.drop_index('ix_access_logs_patient_date', table_name='access_logs')
    op.drop_index(op.f('ix_access_logs_created_at'), table_name='access_logs')
    op.drop_index(op.f('ix_access_logs_action'), table_name='access_logs')
    op.drop_index(op.f('ix_access_logs_doctor_id'), table_name='access_logs')
    op.drop_index(op.f('ix_access_logs_patient_id'), table_name='access_logs')
    op.drop_table('access_logs')

    op.drop_index('ix_doctor_sessions_doctor_live', table_name='doctor_sessions')
    op.drop_index(op.f('ix_doctor_sessions_expires_at'), table_name='doctor_sessions')
    op.drop_index(op.f('ix_doctor_sessions_doctor_id'), table_name='doctor_sessions')
    op.drop_index(op.f('ix_doctor_sessions_patient_id'), table_name='doctor_sessions')
    op.drop_table('doctor_sessions')

    op.drop_index('uq_access_tokens_one_active_per_user', table_name='access_tokens')
    op.drop_index('ix_access_tokens_status_expiry', table_name='access_tokens')
    op.drop_index(op.f('ix_access_tokens_expires_at'), table_name='access_tokens')
    op.drop_index(op.f('ix_access_tokens_status'), table_name='access_tokens')
    op.drop_index(op.f('ix_access_tokens_token'), table_name='access_tokens')
    op.drop_index(op.f('ix_access_tokens_user_id'), table_name='access_tokens')
    op.drop_table('access_tokens')
