"""PostgreSQL connection helpers and schema bootstrap for SchoolFlow."""

import json
import logging
import os
import secrets
from contextlib import contextmanager
from datetime import date, datetime

PK_COLUMN_SQL = 'SERIAL PRIMARY KEY'


def get_database_url():
    url = os.environ.get('DATABASE_URL', '').strip()
    if not url.startswith(('postgres://', 'postgresql://')):
        raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
    return url


def get_db():
    """Create a PostgreSQL DB connection."""
    try:
        import psycopg2
        from psycopg2.extras import DictCursor
    except ImportError as exc:
        raise RuntimeError("PostgreSQL backend requires psycopg2-binary") from exc
    return psycopg2.connect(get_database_url(), cursor_factory=DictCursor, connect_timeout=10)


@contextmanager
def db_connection(commit=False):
    """Context manager for PostgreSQL connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def fetch_one(c):
    row = c.fetchone()
    return dict(row) if row else None


def fetch_all(c):
    return [dict(row) for row in (c.fetchall() or [])]


def generate_code(prefix, digits=8):
    """Human readable record code such as RPT01234567."""
    return prefix + ''.join(secrets.choice('0123456789') for _ in range(digits))


def load_json(value, default):
    if value is None or value == '':
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def dump_json(value):
    return json.dumps(value, default=str)


def safe_int(value, default):
    """Parse integer safely while preserving valid zero values."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def safe_float(value, default):
    """Parse float safely while preserving valid zero values."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def parse_date(value):
    """Accept date, datetime or ISO 'YYYY-MM-DD' strings."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], '%Y-%m-%d').date()
    except ValueError as exc:
        raise ValueError(f'Invalid date "{value}". Use YYYY-MM-DD.') from exc


def choice(value, allowed, label):
    value = (value or '').strip().lower()
    if value not in allowed:
        raise ValueError(f'Invalid {label} "{value}". Expected one of: {", ".join(sorted(allowed))}.')
    return value


SCHEMA = [
    f'''CREATE TABLE IF NOT EXISTS schools (
            id {PK_COLUMN_SQL},
            school_code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            email TEXT,
            phone TEXT,
            address TEXT,
            motto TEXT,
            principal_name TEXT,
            currency TEXT DEFAULT 'GHS',
            timezone TEXT DEFAULT 'Africa/Accra',
            subscription_plan TEXT DEFAULT 'free',
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS users (
            id {PK_COLUMN_SQL},
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL,
            school_id INTEGER REFERENCES schools(id) ON DELETE CASCADE,
            first_name TEXT,
            last_name TEXT,
            phone TEXT,
            status TEXT DEFAULT 'active',
            last_login_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS login_attempts (
            id {PK_COLUMN_SQL},
            endpoint TEXT NOT NULL,
            email TEXT NOT NULL,
            ip_address TEXT NOT NULL,
            failures INTEGER DEFAULT 0,
            first_failed_at TIMESTAMP,
            last_failed_at TIMESTAMP,
            locked_until TIMESTAMP,
            UNIQUE(endpoint, email, ip_address)
        )''',
    f'''CREATE TABLE IF NOT EXISTS login_history (
            id {PK_COLUMN_SQL},
            user_id INTEGER,
            email TEXT,
            success BOOLEAN DEFAULT FALSE,
            ip_address TEXT,
            user_agent TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS audit_logs (
            id {PK_COLUMN_SQL},
            school_id INTEGER,
            user_id INTEGER,
            user_name TEXT,
            action TEXT NOT NULL,
            entity TEXT,
            entity_id TEXT,
            details TEXT,
            ip_address TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS notifications (
            id {PK_COLUMN_SQL},
            school_id INTEGER,
            recipient_id INTEGER NOT NULL,
            recipient_role TEXT,
            title TEXT NOT NULL,
            message TEXT,
            type TEXT DEFAULT 'info',
            action_url TEXT,
            related_type TEXT,
            related_id INTEGER,
            is_read BOOLEAN DEFAULT FALSE,
            read_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS academic_years (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            start_date DATE NOT NULL,
            end_date DATE NOT NULL,
            is_current BOOLEAN DEFAULT FALSE,
            status TEXT DEFAULT 'upcoming',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(school_id, name)
        )''',
    f'''CREATE TABLE IF NOT EXISTS terms (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            academic_year_id INTEGER NOT NULL REFERENCES academic_years(id),
            name TEXT NOT NULL,
            term_number INTEGER NOT NULL,
            start_date DATE NOT NULL,
            end_date DATE NOT NULL,
            holidays TEXT,
            is_current BOOLEAN DEFAULT FALSE,
            status TEXT DEFAULT 'upcoming',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(academic_year_id, term_number)
        )''',
    f'''CREATE TABLE IF NOT EXISTS classes (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            class_code TEXT NOT NULL,
            name TEXT NOT NULL,
            level TEXT,
            department TEXT,
            academic_year_id INTEGER,
            capacity INTEGER,
            class_teacher_id INTEGER,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(school_id, class_code)
        )''',
    f'''CREATE TABLE IF NOT EXISTS subjects (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            subject_code TEXT NOT NULL,
            name TEXT NOT NULL,
            department TEXT,
            is_core BOOLEAN DEFAULT TRUE,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(school_id, subject_code)
        )''',
    '''CREATE TABLE IF NOT EXISTS class_subjects (
            class_id INTEGER NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
            PRIMARY KEY (class_id, subject_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS teachers (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            user_id INTEGER UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            employee_id TEXT NOT NULL,
            qualification TEXT,
            department TEXT,
            specialization TEXT,
            joining_date DATE,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(school_id, employee_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS subject_assignments (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL,
            teacher_id INTEGER NOT NULL REFERENCES teachers(id) ON DELETE CASCADE,
            subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
            class_id INTEGER NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            UNIQUE(teacher_id, subject_id, class_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS students (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
            admission_number TEXT NOT NULL,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            date_of_birth DATE,
            gender TEXT,
            class_id INTEGER REFERENCES classes(id),
            guardian_name TEXT,
            guardian_phone TEXT,
            parent_user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
            emergency_contact_name TEXT,
            emergency_contact_phone TEXT,
            address TEXT,
            status TEXT DEFAULT 'active',
            enrolled_at DATE DEFAULT CURRENT_DATE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(school_id, admission_number)
        )''',
    f'''CREATE TABLE IF NOT EXISTS attendance (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            attendance_code TEXT UNIQUE NOT NULL,
            class_id INTEGER NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            date DATE NOT NULL,
            session TEXT NOT NULL,
            total_students INTEGER DEFAULT 0,
            present_count INTEGER DEFAULT 0,
            absent_count INTEGER DEFAULT 0,
            late_count INTEGER DEFAULT 0,
            excused_count INTEGER DEFAULT 0,
            status TEXT DEFAULT 'pending',
            marked_by INTEGER,
            locked_by INTEGER,
            locked_at TIMESTAMP,
            unlocked_by INTEGER,
            unlocked_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(class_id, date, session)
        )''',
    f'''CREATE TABLE IF NOT EXISTS attendance_records (
            id {PK_COLUMN_SQL},
            attendance_id INTEGER NOT NULL REFERENCES attendance(id) ON DELETE CASCADE,
            student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            status TEXT NOT NULL,
            remarks TEXT,
            marked_by INTEGER,
            marked_at TIMESTAMP,
            previous_status TEXT,
            override_reason TEXT,
            overridden_by INTEGER,
            overridden_at TIMESTAMP,
            UNIQUE(attendance_id, student_id)
        )''',
    '''CREATE TABLE IF NOT EXISTS attendance_settings (
            school_id INTEGER PRIMARY KEY REFERENCES schools(id) ON DELETE CASCADE,
            settings TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS grading_scales (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            scale_code TEXT NOT NULL,
            name TEXT NOT NULL,
            department TEXT,
            bands TEXT NOT NULL,
            is_default BOOLEAN DEFAULT FALSE,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS exams (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            exam_code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            exam_type TEXT NOT NULL,
            academic_year_id INTEGER,
            term_id INTEGER,
            start_date DATE,
            end_date DATE,
            department TEXT,
            class_ids TEXT,
            subject_ids TEXT,
            total_marks REAL DEFAULT 100,
            weightage REAL DEFAULT 100,
            status TEXT DEFAULT 'draft',
            is_unlocked BOOLEAN DEFAULT FALSE,
            unlock_reason TEXT,
            unlocked_by INTEGER,
            unlocked_at TIMESTAMP,
            locked_by INTEGER,
            locked_at TIMESTAMP,
            created_by INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS exam_marks (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL,
            exam_id INTEGER NOT NULL REFERENCES exams(id) ON DELETE CASCADE,
            student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
            class_id INTEGER,
            class_score REAL DEFAULT 0,
            exam_score REAL DEFAULT 0,
            total_marks REAL DEFAULT 0,
            max_marks REAL DEFAULT 100,
            percentage REAL DEFAULT 0,
            grade TEXT,
            remarks TEXT,
            is_absent BOOLEAN DEFAULT FALSE,
            position INTEGER,
            submission_status TEXT DEFAULT 'draft',
            entered_by INTEGER,
            verified_by INTEGER,
            verified_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(exam_id, student_id, subject_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS report_cards (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            report_code TEXT UNIQUE NOT NULL,
            student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            class_id INTEGER,
            academic_year_id INTEGER,
            term_id INTEGER,
            exam_id INTEGER,
            subjects TEXT,
            raw_score REAL DEFAULT 0,
            total_score REAL DEFAULT 0,
            percentage REAL DEFAULT 0,
            overall_grade TEXT,
            position INTEGER,
            total_students INTEGER,
            grading_scale_id INTEGER,
            attendance TEXT,
            conduct TEXT,
            attitude TEXT,
            interest TEXT,
            class_teacher_comment TEXT,
            headmaster_comment TEXT,
            promoted_to TEXT,
            vacation_date DATE,
            reopening_date DATE,
            termly_performance TEXT,
            status TEXT DEFAULT 'draft',
            version INTEGER DEFAULT 1,
            previous_percentage REAL,
            verified_by_class_teacher BOOLEAN DEFAULT FALSE,
            reviewed_by INTEGER,
            reviewed_at TIMESTAMP,
            published_by INTEGER,
            published_role TEXT,
            published_at TIMESTAMP,
            unpublish_reason TEXT,
            generated_by INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(student_id, academic_year_id, term_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS fee_categories (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            category_code TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(school_id, name)
        )''',
    f'''CREATE TABLE IF NOT EXISTS fee_structures (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            structure_code TEXT NOT NULL,
            name TEXT NOT NULL,
            class_id INTEGER,
            department TEXT,
            academic_year_id INTEGER,
            term_id INTEGER,
            items TEXT NOT NULL,
            total_amount REAL DEFAULT 0,
            due_date DATE,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS discounts (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            discount_code TEXT NOT NULL,
            name TEXT NOT NULL,
            discount_type TEXT NOT NULL,
            value REAL NOT NULL,
            applicable_to TEXT DEFAULT 'all',
            category_ids TEXT,
            student_id INTEGER,
            reason TEXT,
            start_date DATE,
            end_date DATE,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS fee_payments (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            payment_code TEXT UNIQUE NOT NULL,
            receipt_number TEXT UNIQUE NOT NULL,
            student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            class_id INTEGER,
            structure_id INTEGER,
            category_id INTEGER,
            amount_due REAL NOT NULL,
            amount_paid REAL NOT NULL,
            remaining_balance REAL NOT NULL,
            payment_method TEXT NOT NULL,
            payment_date DATE DEFAULT CURRENT_DATE,
            status TEXT NOT NULL,
            notes TEXT,
            received_by INTEGER,
            academic_year_id INTEGER,
            term_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS subscription_plans (
            id {PK_COLUMN_SQL},
            name TEXT UNIQUE NOT NULL,
            display_name TEXT NOT NULL,
            description TEXT,
            price REAL DEFAULT 0,
            currency TEXT DEFAULT 'GHS',
            billing_period TEXT DEFAULT 'monthly',
            features TEXT,
            max_students INTEGER,
            max_teachers INTEGER,
            max_classes INTEGER,
            is_active BOOLEAN DEFAULT TRUE,
            is_popular BOOLEAN DEFAULT FALSE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS subscription_requests (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            admin_user_id INTEGER,
            plan_id INTEGER NOT NULL REFERENCES subscription_plans(id),
            plan_name TEXT,
            is_trial BOOLEAN DEFAULT FALSE,
            status TEXT NOT NULL,
            trial_start TIMESTAMP,
            trial_end TIMESTAMP,
            payment_reference TEXT,
            payment_proof TEXT,
            rejection_reason TEXT,
            reviewed_by INTEGER,
            reviewed_at TIMESTAMP,
            last_warning_days INTEGER,
            last_grace_notice DATE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS subscription_payments (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            request_id INTEGER,
            amount REAL NOT NULL,
            currency TEXT DEFAULT 'GHS',
            due_date DATE,
            paid_at TIMESTAMP,
            reference TEXT,
            status TEXT DEFAULT 'pending',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS events (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            event_code TEXT UNIQUE NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            event_type TEXT NOT NULL,
            start_date DATE NOT NULL,
            end_date DATE NOT NULL,
            start_time TEXT,
            end_time TEXT,
            is_all_day BOOLEAN DEFAULT FALSE,
            location TEXT,
            venue_type TEXT DEFAULT 'on_campus',
            audience TEXT DEFAULT 'all',
            target_class_ids TEXT,
            recurrence TEXT,
            requires_rsvp BOOLEAN DEFAULT FALSE,
            rsvp_deadline DATE,
            max_attendees INTEGER,
            color TEXT,
            status TEXT DEFAULT 'upcoming',
            cancellation_reason TEXT,
            created_by INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS event_rsvps (
            id {PK_COLUMN_SQL},
            event_id INTEGER NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            respondent_id INTEGER NOT NULL,
            respondent_role TEXT,
            respondent_name TEXT,
            status TEXT DEFAULT 'pending',
            guests INTEGER DEFAULT 0,
            notes TEXT,
            responded_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(event_id, respondent_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS conversations (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            conversation_code TEXT UNIQUE NOT NULL,
            teacher_user_id INTEGER NOT NULL,
            parent_user_id INTEGER NOT NULL,
            student_id INTEGER,
            subject TEXT,
            last_message_preview TEXT,
            last_message_at TIMESTAMP,
            teacher_unread INTEGER DEFAULT 0,
            parent_unread INTEGER DEFAULT 0,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS messages (
            id {PK_COLUMN_SQL},
            conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            message_code TEXT UNIQUE NOT NULL,
            sender_id INTEGER NOT NULL,
            sender_role TEXT,
            body TEXT NOT NULL,
            is_read BOOLEAN DEFAULT FALSE,
            read_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS announcements (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            audience TEXT DEFAULT 'all',
            class_id INTEGER,
            priority TEXT DEFAULT 'normal',
            status TEXT DEFAULT 'draft',
            expires_at DATE,
            created_by INTEGER,
            published_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
]

INDEXES = [
    'CREATE INDEX IF NOT EXISTS idx_users_school_role ON users(school_id, role)',
    'CREATE INDEX IF NOT EXISTS idx_students_school_class ON students(school_id, class_id)',
    'CREATE INDEX IF NOT EXISTS idx_attendance_school_date ON attendance(school_id, date)',
    'CREATE INDEX IF NOT EXISTS idx_exam_marks_exam_class ON exam_marks(exam_id, class_id)',
    'CREATE INDEX IF NOT EXISTS idx_report_cards_school_class ON report_cards(school_id, class_id, status)',
    'CREATE INDEX IF NOT EXISTS idx_fee_payments_school_student ON fee_payments(school_id, student_id)',
    'CREATE INDEX IF NOT EXISTS idx_events_school_start ON events(school_id, start_date)',
    'CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient_id, is_read)',
    'CREATE INDEX IF NOT EXISTS idx_audit_logs_school ON audit_logs(school_id, created_at)',
]

# Added by revision 002: sections, timetables, payment plans, fee reminders and support tickets.
EXTENDED_SCHEMA = [
    f'''CREATE TABLE IF NOT EXISTS sections (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            class_id INTEGER NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            capacity INTEGER,
            class_teacher_id INTEGER REFERENCES teachers(id) ON DELETE SET NULL,
            room TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(class_id, name)
        )''',
    'ALTER TABLE students ADD COLUMN IF NOT EXISTS section_id INTEGER REFERENCES sections(id) ON DELETE SET NULL',
    f'''CREATE TABLE IF NOT EXISTS timetables (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            timetable_code TEXT UNIQUE NOT NULL,
            class_id INTEGER UNIQUE NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            academic_year_id INTEGER,
            term_id INTEGER,
            status TEXT DEFAULT 'active',
            created_by INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS timetable_periods (
            id {PK_COLUMN_SQL},
            timetable_id INTEGER NOT NULL REFERENCES timetables(id) ON DELETE CASCADE,
            day_of_week TEXT NOT NULL,
            period_number INTEGER NOT NULL,
            period_name TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            duration INTEGER NOT NULL,
            is_break BOOLEAN DEFAULT FALSE,
            UNIQUE(timetable_id, day_of_week, period_number)
        )''',
    f'''CREATE TABLE IF NOT EXISTS timetable_assignments (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            timetable_id INTEGER NOT NULL REFERENCES timetables(id) ON DELETE CASCADE,
            period_id INTEGER UNIQUE NOT NULL REFERENCES timetable_periods(id) ON DELETE CASCADE,
            class_id INTEGER NOT NULL,
            subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
            teacher_id INTEGER NOT NULL REFERENCES teachers(id) ON DELETE CASCADE,
            day_of_week TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            room TEXT,
            notes TEXT,
            assigned_by INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS timetable_templates (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            description TEXT,
            periods TEXT NOT NULL,
            status TEXT DEFAULT 'active',
            created_by INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS payment_plans (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            plan_code TEXT UNIQUE NOT NULL,
            student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            category_id INTEGER REFERENCES fee_categories(id) ON DELETE SET NULL,
            name TEXT NOT NULL,
            total_amount REAL NOT NULL,
            installment_count INTEGER NOT NULL,
            frequency TEXT NOT NULL,
            start_date DATE NOT NULL,
            status TEXT DEFAULT 'active',
            notes TEXT,
            created_by INTEGER,
            cancelled_reason TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS payment_installments (
            id {PK_COLUMN_SQL},
            plan_id INTEGER NOT NULL REFERENCES payment_plans(id) ON DELETE CASCADE,
            installment_number INTEGER NOT NULL,
            amount_due REAL NOT NULL,
            amount_paid REAL DEFAULT 0,
            due_date DATE NOT NULL,
            status TEXT DEFAULT 'pending',
            payment_method TEXT,
            paid_at TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(plan_id, installment_number)
        )''',
    f'''CREATE TABLE IF NOT EXISTS fee_reminders (
            id {PK_COLUMN_SQL},
            school_id INTEGER NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            reminder_type TEXT NOT NULL,
            method TEXT NOT NULL,
            amount_outstanding REAL NOT NULL,
            message TEXT,
            status TEXT DEFAULT 'sent',
            sent_by INTEGER,
            sent_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS support_tickets (
            id {PK_COLUMN_SQL},
            ticket_number TEXT UNIQUE NOT NULL,
            school_id INTEGER REFERENCES schools(id) ON DELETE CASCADE,
            requester_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            requester_name TEXT,
            requester_role TEXT,
            subject TEXT NOT NULL,
            description TEXT NOT NULL,
            category TEXT NOT NULL,
            priority TEXT DEFAULT 'medium',
            status TEXT DEFAULT 'open',
            assigned_to INTEGER,
            last_response_by TEXT,
            response_count INTEGER DEFAULT 0,
            resolved_at TIMESTAMP,
            closed_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS support_ticket_messages (
            id {PK_COLUMN_SQL},
            ticket_id INTEGER NOT NULL REFERENCES support_tickets(id) ON DELETE CASCADE,
            sender_id INTEGER NOT NULL,
            sender_name TEXT,
            sender_role TEXT,
            body TEXT NOT NULL,
            is_internal BOOLEAN DEFAULT FALSE,
            attachments TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
]

EXTENDED_INDEXES = [
    'CREATE INDEX IF NOT EXISTS idx_sections_class ON sections(class_id)',
    'CREATE INDEX IF NOT EXISTS idx_timetable_assignments_teacher ON timetable_assignments(school_id, teacher_id, day_of_week)',
    'CREATE INDEX IF NOT EXISTS idx_payment_installments_due ON payment_installments(status, due_date)',
    'CREATE INDEX IF NOT EXISTS idx_fee_reminders_school ON fee_reminders(school_id, sent_at)',
    'CREATE INDEX IF NOT EXISTS idx_support_tickets_status ON support_tickets(status, priority)',
]


def init_db():
    """Create all tables and indexes if they don't exist."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for statement in SCHEMA + INDEXES + EXTENDED_SCHEMA + EXTENDED_INDEXES:
            db_execute(c, statement)
    logging.info("Database schema verified (%s tables).", len(SCHEMA) + len(EXTENDED_SCHEMA) - 1)
