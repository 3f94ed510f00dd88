"""create user and timer_record

Revision ID: 5c2e9a71d0b4
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e9a71d0b4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'user' not in existing_tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
            sa.Column('is_facilitator', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)

    if 'timer_record' not in existing_tables:
        op.create_table(
            'timer_record',
            sa.Column('project_code', sa.String(length=4), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('duration_seconds', sa.Float(), nullable=True),
            sa.Column('configured_seconds', sa.Integer(), nullable=True),
            sa.Column('start_time', sa.Float(), nullable=True),
            sa.Column('remaining_at_pause', sa.Float(), nullable=True),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('updated_at', sa.Float(), nullable=True),
            sa.PrimaryKeyConstraint('project_code'),
        )


def downgrade():
    op.drop_table('timer_record')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
