"""create user, room, participant and race_result tables

Revision ID: 5c2a9e7d1b40
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2a9e7d1b40'
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
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)

    if 'room' not in existing_tables:
        op.create_table(
            'room',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('code', sa.String(length=8), nullable=False),
            sa.Column('host_session_id', sa.String(length=128), nullable=False),
            sa.Column('host_name', sa.String(length=64), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='waiting'),
            sa.Column('game_mode', sa.String(length=16), nullable=False, server_default='practice'),
            sa.Column('settings', sa.Text(), nullable=False),
            sa.Column('target_text', sa.Text(), nullable=True),
            sa.Column('race_start_time', sa.BigInteger(), nullable=True),
            sa.Column('race_end_time', sa.BigInteger(), nullable=True),
            sa.Column('ready_participants', sa.Text(), nullable=False, server_default='[]'),
            sa.Column('race_epoch', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.BigInteger(), nullable=False),
            sa.Column('expires_at', sa.BigInteger(), nullable=False),
        )
        op.create_index('ix_room_code', 'room', ['code'])
        op.create_index('ix_room_host_session_id', 'room', ['host_session_id'])

    if 'participant' not in existing_tables:
        op.create_table(
            'participant',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('room_id', sa.Integer(), sa.ForeignKey('room.id', ondelete='CASCADE'), nullable=False),
            sa.Column('session_id', sa.String(length=128), nullable=False),
            sa.Column('name', sa.String(length=64), nullable=False),
            sa.Column('avatar', sa.String(length=16), nullable=False),
            sa.Column('is_connected', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('is_ready', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('wpm', sa.Float(), nullable=False, server_default='0'),
            sa.Column('accuracy', sa.Float(), nullable=False, server_default='0'),
            sa.Column('progress', sa.Float(), nullable=False, server_default='0'),
            sa.Column('words_typed', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('time_elapsed', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('is_finished', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('finish_time', sa.Integer(), nullable=True),
            sa.Column('position', sa.Integer(), nullable=True),
            sa.Column('typed_progress', sa.Integer(), nullable=True),
            sa.Column('typed_text', sa.Text(), nullable=True),
            sa.Column('race_epoch', sa.Integer(), nullable=True),
            sa.Column('joined_at', sa.BigInteger(), nullable=False),
            sa.Column('last_seen', sa.BigInteger(), nullable=False),
            sa.UniqueConstraint('room_id', 'session_id', name='uq_participant_room_session'),
        )
        op.create_index('ix_participant_room_id', 'participant', ['room_id'])
        op.create_index('ix_participant_session_id', 'participant', ['session_id'])

    if 'race_result' not in existing_tables:
        op.create_table(
            'race_result',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('room_id', sa.Integer(), sa.ForeignKey('room.id', ondelete='CASCADE'), nullable=False),
            sa.Column('race_epoch', sa.Integer(), nullable=False),
            sa.Column('rankings', sa.Text(), nullable=False),
            sa.Column('target_text', sa.Text(), nullable=False, server_default=''),
            sa.Column('total_racers', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.BigInteger(), nullable=False),
            sa.UniqueConstraint('room_id', 'race_epoch', name='uq_race_result_room_epoch'),
        )
        op.create_index('ix_race_result_room_id', 'race_result', ['room_id'])


def downgrade():
    op.drop_table('race_result')
    op.drop_table('participant')
    op.drop_table('room')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
