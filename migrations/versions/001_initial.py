"""Initial schema for SchoolFlow.

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op

from db import SCHEMA, INDEXES


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

# Reverse dependency order.
TABLES = [
    'announcements', 'messages', 'conversations', 'event_rsvps', 'events', 'subscription_payments',
    'subscription_requests', 'subscription_plans', 'fee_payments', 'discounts', 'fee_structures', 'fee_categories',
    'report_cards', 'exam_marks', 'exams', 'grading_scales', 'attendance_settings', 'attendance_records', 'attendance',
    'students', 'subject_assignments', 'teachers', 'class_subjects', 'subjects', 'classes', 'terms', 'academic_years',
    'notifications', 'audit_logs', 'login_history', 'login_attempts', 'users', 'schools',
]


def upgrade() -> None:
    """Create all tables and indexes."""
    for statement in SCHEMA:
        op.execute(statement)
    for statement in INDEXES:
        op.execute(statement)


def downgrade() -> None:
    """Drop all tables (destructive)."""
    for table in TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
