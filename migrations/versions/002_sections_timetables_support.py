"""Sections, timetables, payment plans, fee reminders and support tickets.

Revision ID: 002_sections_timetables_support
Revises: 001_initial
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op

from db import EXTENDED_SCHEMA, EXTENDED_INDEXES


# revision identifiers, used by Alembic.
revision = '002_sections_timetables_support'
down_revision = '001_initial'
branch_labels = None
depends_on = None

# Reverse dependency order.
TABLES = [
    'support_ticket_messages', 'support_tickets', 'fee_reminders', 'payment_installments', 'payment_plans',
    'timetable_templates', 'timetable_assignments', 'timetable_periods', 'timetables',
]


def upgrade() -> None:
    """Create the new tables, the students.section_id column and their indexes."""
    for statement in EXTENDED_SCHEMA:
        op.execute(statement)
    for statement in EXTENDED_INDEXES:
        op.execute(statement)


def downgrade() -> None:
    """Drop the new tables and the section column (destructive)."""
    for table in TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
    op.execute('ALTER TABLE students DROP COLUMN IF EXISTS section_id')
    op.execute('DROP TABLE IF EXISTS sections CASCADE')
