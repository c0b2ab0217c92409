"""001 Jobs table - one operational job per Square booking

Revision ID: 001_jobs_table
Revises:
Create Date: 2026-10-19

- booking_id UNIQUE: concurrent webhook/reconciliation inserts collapse to one row
- JSON columns for staff-derived sub-documents (checklist, photos, history, ...)
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_jobs_table'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'jobs',
        sa.Column('job_id', sa.String(36), primary_key=True),
        # Booking-derived
        sa.Column('booking_id', sa.String(255), nullable=False),
        sa.Column('appointment_time', sa.String(40), nullable=True),
        sa.Column('service_type', sa.String(255), nullable=True),
        sa.Column('customer_id', sa.String(255), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('customer_cached', sa.JSON(), nullable=True),
        # Staff-derived
        sa.Column('work_status', sa.String(40), nullable=False, server_default='SCHEDULED'),
        sa.Column('checklist', sa.JSON(), nullable=True),
        sa.Column('photos_meta', sa.JSON(), nullable=True),
        sa.Column('receipt_photos', sa.JSON(), nullable=True),
        sa.Column('post_completion_issue', sa.JSON(), nullable=True),
        sa.Column('payment', sa.JSON(), nullable=True),
        sa.Column('vehicle_info', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status_history', sa.JSON(), nullable=True),
        sa.Column('no_show', sa.JSON(), nullable=True),
        sa.Column('booking_cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('updated_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('booking_id', name='uq_jobs_booking_id'),
    )

    op.create_index('ix_jobs_appointment_time', 'jobs', ['appointment_time'])
    op.create_index('ix_jobs_work_status', 'jobs', ['work_status'])


def downgrade():
    op.drop_index('ix_jobs_work_status', table_name='jobs')
    op.drop_index('ix_jobs_appointment_time', table_name='jobs')
    op.drop_table('jobs')
