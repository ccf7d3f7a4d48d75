"""Initial lambing schema

Revision ID: 3b1f6c2a9d40
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3b1f6c2a9d40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('lambing_record',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('ewe_id', sa.String(length=50), nullable=False),
        sa.Column('sire_id', sa.String(length=50), nullable=True),
        sa.Column('male_lambs', sa.Integer(), server_default='0', nullable=False),
        sa.Column('female_lambs', sa.Integer(), server_default='0', nullable=False),
        sa.Column('deaths', sa.Integer(), server_default='0', nullable=False),
        sa.Column('lambs_born', sa.Integer(), server_default='0', nullable=False),
        sa.Column('scanned_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('sex_distribution', sa.String(length=20), nullable=True),
        sa.Column('assistance', sa.String(length=100), nullable=True),
        sa.Column('id_mark', sa.String(length=50), nullable=True),
        sa.Column('comments', sa.Text(), nullable=True),
        sa.Column('lamb_ids', sa.Text(), nullable=True),
        sa.Column('image_data', sa.LargeBinary(), nullable=True),
        sa.Column('image_filename', sa.String(length=200), nullable=True),
        sa.Column('image_mimetype', sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('lambing_record', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_lambing_record_date'), ['date'], unique=False)
        batch_op.create_index(batch_op.f('ix_lambing_record_ewe_id'), ['ewe_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_lambing_record_sire_id'), ['sire_id'], unique=False)

    op.create_table('sheep',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('is_ewe', sa.Boolean(), nullable=False),
        sa.Column('is_ram', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('setting',
        sa.Column('key', sa.String(length=50), nullable=False),
        sa.Column('value', sa.String(length=500), nullable=True),
        sa.PrimaryKeyConstraint('key')
    )


def downgrade():
    op.drop_table('setting')
    op.drop_table('sheep')
    with op.batch_alter_table('lambing_record', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_lambing_record_sire_id'))
        batch_op.drop_index(batch_op.f('ix_lambing_record_ewe_id'))
        batch_op.drop_index(batch_op.f('ix_lambing_record_date'))

    op.drop_table('lambing_record')
