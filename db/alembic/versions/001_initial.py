"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-12

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'pm25_measurements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('pm25_value', sa.Float(), nullable=False),
        sa.Column('aod_value', sa.Float(), nullable=True),
        sa.Column('no2_value', sa.Float(), nullable=True),
        sa.Column('temperature', sa.Float(), nullable=True),
        sa.Column('humidity', sa.Float(), nullable=True),
        sa.Column('wind_speed', sa.Float(), nullable=True),
        sa.Column('measurement_date', sa.DateTime(), nullable=False),
        sa.Column('data_source', sa.String(length=50), nullable=False),
        sa.Column('is_prediction', sa.Boolean(), nullable=False),
        sa.Column('model_version', sa.String(length=50), nullable=True),
        sa.Column('prediction_accuracy', sa.Float(), nullable=True),
        sa.Column('validation_status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_pm25_measurements_id', 'pm25_measurements', ['id'])
    op.create_index('ix_pm25_measurements_measurement_date', 'pm25_measurements', ['measurement_date'])
    op.create_index('ix_pm25_measurements_data_source', 'pm25_measurements', ['data_source'])
    op.create_index('ix_pm25_measurements_is_prediction', 'pm25_measurements', ['is_prediction'])
    op.create_index('idx_lat_lng', 'pm25_measurements', ['latitude', 'longitude'])


def downgrade() -> None:
    op.drop_index('idx_lat_lng', table_name='pm25_measurements')
    op.drop_index('ix_pm25_measurements_is_prediction', table_name='pm25_measurements')
    op.drop_index('ix_pm25_measurements_data_source', table_name='pm25_measurements')
    op.drop_index('ix_pm25_measurements_measurement_date', table_name='pm25_measurements')
    op.drop_index('ix_pm25_measurements_id', table_name='pm25_measurements')
    op.drop_table('pm25_measurements')
