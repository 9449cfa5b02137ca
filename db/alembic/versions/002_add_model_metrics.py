"""add_model_metrics_table

Revision ID: 002
Revises: 001
Create Date: 2026-10-14

"""
from alembic import op
import sqlalchemy as sa

revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'model_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('model_name', sa.String(length=100), nullable=False),
        sa.Column('rmse', sa.Float(), nullable=True),
        sa.Column('r_squared', sa.Float(), nullable=True),
        sa.Column('mae', sa.Float(), nullable=True),
        sa.Column('validation_score', sa.Float(), nullable=True),
        sa.Column('training_samples', sa.Integer(), nullable=True),
        sa.Column('feature_importance', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_model_metrics_id', 'model_metrics', ['id'])
    op.create_index('ix_model_metrics_model_name', 'model_metrics', ['model_name'])
    op.create_index('ix_model_metrics_created_at', 'model_metrics', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_model_metrics_created_at', table_name='model_metrics')
    op.drop_index('ix_model_metrics_model_name', table_name='model_metrics')
    op.drop_index('ix_model_metrics_id', table_name='model_metrics')
    op.drop_table('model_metrics')
