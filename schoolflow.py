"""
SchoolFlow - multi-school management service

A Flask JSON API covering school onboarding, academics, attendance, exams and
report cards, fees, subscriptions, events, messaging and exports, with
role-based access for super admins, school admins, teachers, students and
parents.
"""

from flask import Flask, request, session, jsonify, Response
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from wtforms import StringField, PasswordField, validators
from functools import wraps

import os
import logging
from dotenv import load_dotenv

from db import init_db
from accounts import (
    get_user, get_user_by_email, check_password, user_display_name, create_user, list_users, update_profile,
    change_password, reset_password, set_user_status, ensure_super_admin, is_login_blocked, register_failed_login,
    clear_failed_login, purge_old_login_attempts, record_login, login_history, record_audit_log, list_audit_logs,
    list_notifications, mark_notification_read, mark_all_notifications_read,
)
from tenancy import (
    create_school_with_admin, get_school, list_schools, update_school, update_school_status, update_school_plan,
    delete_school, get_platform_stats,
)
from academics import (
    add_academic_year, list_academic_years, get_current_academic_year, set_current_year, update_year_status,
    delete_academic_year, add_term, list_terms, get_current_term, set_current_term, update_term, delete_term,
    create_class, list_classes, get_class, update_class, delete_class, create_subject, bulk_create_subjects,
    list_subjects, update_subject, bulk_update_subject_status, delete_subject, set_class_subjects, class_subjects,
    assign_subject_teacher, remove_subject_teacher, list_subject_assignments, create_section, list_sections,
    update_section, delete_section, assign_students_to_section,
)
from people import (
    create_teacher, list_teachers, get_teacher, get_teacher_by_user, update_teacher, bulk_update_teacher_status,
    delete_teacher, teacher_classes, teacher_has_class_access, is_class_teacher, generate_admission_number,
    create_student, list_students, get_student, get_student_by_user, students_for_parent, update_student,
    link_parent, delete_student, promote_students,
)
from grading import (
    create_grading_scale, list_grading_scales, get_grading_scale, update_grading_scale, set_default_grading_scale,
    delete_grading_scale,
)
from exams import (
    create_exam, get_exam, list_exams, update_exam, unlock_exam, lock_exam, delete_exam, enter_marks,
    quick_enter_marks, list_marks, delete_mark, submit_marks, verify_marks, calculate_subject_positions,
    class_grade_summary, class_performance_distribution, subject_performance, student_performance_trends,
    exam_marks_stats,
)
from report_cards import (
    generate_report_card, generate_class_report_cards, review_report_card, bulk_approve_report_cards,
    publish_report_cards, unpublish_report_card, archive_report_card, update_report_card, delete_report_card,
    bulk_delete_report_cards, list_report_cards, list_draft_report_cards, get_report_card,
    published_cards_for_student,
)
from attendance import (
    create_attendance, mark_student_attendance, mark_class_attendance, complete_attendance, lock_attendance,
    unlock_attendance, admin_override_attendance, delete_attendance, bulk_mark_attendance, list_attendance,
    today_attendance, get_attendance, attendance_records, student_attendance_history, attendance_stats,
    student_attendance_rate, pending_attendance_classes, get_attendance_settings, save_attendance_settings,
)
from fees import (
    create_fee_category, bulk_create_fee_categories, list_fee_categories, update_fee_category, delete_fee_category,
    fee_category_stats, create_fee_structure, list_fee_structures, update_fee_structure, delete_fee_structure,
    structure_for_class, create_discount, list_discounts, set_discount_status, delete_discount, record_payment,
    update_payment, delete_payment, get_payment, list_payments, payment_stats, student_fee_statement,
    bulk_import_payments, apply_fee_structure_to_students,
)
from payment_plans import (
    create_payment_plan, list_payment_plans, get_payment_plan, record_installment_payment, cancel_payment_plan,
    mark_overdue_installments, upcoming_installments,
)
from fee_reminders import students_with_outstanding_fees, send_fee_reminders, list_fee_reminders
from timetables import (
    create_timetable, list_timetables, get_timetable, timetable_for_class, update_timetable, delete_timetables,
    update_period, assign_teacher, remove_assignment, teacher_timetable, check_timetable_conflicts, save_as_template,
    list_templates, update_template, archive_template, apply_template, clone_timetable,
)
from support import (
    create_ticket, list_tickets, get_ticket, add_message, update_ticket_status, update_ticket_priority, assign_ticket,
    close_ticket, reopen_ticket, ticket_stats,
)
from subscriptions import (
    seed_default_plans, list_plans, create_plan, update_plan, check_plan_limit, request_subscription,
    submit_payment_proof, approve_subscription_request, reject_subscription_request, list_subscription_requests,
    check_trials, record_subscription_payment, mark_subscription_payment_paid, mark_overdue_subscription_payments,
    subscription_payment_stats,
)
from events import (
    create_event, require_event, list_events, events_in_range, upcoming_events, update_event, cancel_event,
    duplicate_event, delete_event, refresh_event_statuses, event_stats, respond_to_event, create_pending_rsvps, list_rsvps,
    pending_respondents, rsvp_stats, event_notifications,
)
from messaging import (
    start_conversation, send_message, list_messages, mark_messages_read, archive_conversation, list_conversations,
    unread_count, create_announcement, set_announcement_status, update_announcement, delete_announcement,
    list_announcements, announcements_for,
)
from dashboard import get_school_stats, recent_activities, teacher_overview, student_overview
from exports import (
    students_csv, attendance_csv, exam_marks_csv, payments_csv, report_cards_csv, report_card_pdf, fee_receipt_pdf,
)

load_dotenv()

app = Flask(__name__, template_folder='frontend/templates', static_folder='static')
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

# Initialize CSRF Protection
csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
SUPER_ADMIN_EMAIL = os.environ.get('SUPER_ADMIN_EMAIL', 'superadmin@schoolflow.local').strip().lower()
SUPER_ADMIN_PASSWORD = os.environ.get('SUPER_ADMIN_PASSWORD', '').strip()
if not SUPER_ADMIN_PASSWORD:
    raise RuntimeError("SUPER_ADMIN_PASSWORD is required. Set it in environment variables.")
if len(SUPER_ADMIN_PASSWORD) < 12:
    raise RuntimeError("SUPER_ADMIN_PASSWORD is too short. Use at least 12 characters.")

logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'), level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

# Initialize database (can be disabled when schema is managed by migrations).
RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")

RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_BOOTSTRAP:
    ensure_super_admin(SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)
    seed_default_plans()
    purge_old_login_attempts()


class LoginForm(FlaskForm):
    email = StringField('Email', [validators.DataRequired(), validators.Length(max=255)])
    password = PasswordField('Password', [validators.DataRequired()])


class ChangePasswordForm(FlaskForm):
    current_password = PasswordField('Current password', [validators.DataRequired()])
    new_password = PasswordField('New password', [validators.DataRequired(), validators.Length(min=8)])
    confirm_password = PasswordField('Confirm password', [validators.EqualTo('new_password', message='Passwords do not match.')])


# ==================== HELPERS ====================

def get_client_ip():
    """Best-effort client IP extraction."""
    trust_proxy = os.environ.get('TRUST_PROXY_HEADERS', '').strip().lower() in ('1', 'true', 'yes')
    xff = (request.headers.get('X-Forwarded-For') or '').strip()
    if trust_proxy and xff:
        # Left-most entry is the client when behind a trusted reverse proxy.
        for part in xff.split(','):
            ip = (part or '').strip()
            if ip:
                return ip
    return (request.remote_addr or '').strip() or 'unknown'


def request_data():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def pick(data, *keys):
    return {key: data[key] for key in keys if key in data}


def id_list(data, key='ids'):
    values = data.get(key) or []
    if not isinstance(values, list):
        raise ValueError(f'"{key}" must be a list.')
    return [int(value) for value in values]


def current_user():
    return {'id': session.get('user_id'), 'name': session.get('name', ''), 'role': session.get('role')}


def current_school_id():
    return session.get('school_id')


def form_errors(form):
    return '; '.join(f'{field}: {", ".join(errors)}' for field, errors in form.errors.items())


def role_required(*roles):
    """Require a logged-in session with one of ``roles``."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not session.get('user_id'):
                return jsonify({'error': 'Login required.'}), 401
            if session.get('role') not in roles:
                return jsonify({'error': 'Access denied for your role.'}), 403
            return view(*args, **kwargs)
        return wrapped
    return decorator


def csv_download(filename, content):
    return Response(
        content,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )


def pdf_download(filename, content):
    return Response(
        content,
        mimetype='application/pdf',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'}
    )


def current_teacher():
    teacher = get_teacher_by_user(session.get('user_id'))
    if not teacher or int(teacher['school_id']) != int(current_school_id()):
        raise PermissionError('Teacher profile not found for this account.')
    return teacher


def require_class_access(teacher, class_id):
    if not teacher_has_class_access(current_school_id(), teacher['id'], class_id):
        raise PermissionError('You are not assigned to this class.')


def parent_child(student_id):
    children = {int(child['id']) for child in students_for_parent(session.get('user_id'))}
    if int(student_id) not in children:
        raise PermissionError('This student is not linked to your account.')
    return int(student_id)


# ==================== ERRORS AND GUARDS ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    return jsonify({'error': 'Form token expired/invalid. Fetch a new token and retry.'}), 400


@app.errorhandler(ValueError)
def value_error(error):
    return jsonify({'error': str(error)}), 400


@app.errorhandler(LookupError)
def lookup_error(error):
    if isinstance(error, KeyError):
        return jsonify({'error': f'Missing field: {error.args[0]}'}), 400
    return jsonify({'error': str(error)}), 404


@app.errorhandler(PermissionError)
def permission_error(error):
    return jsonify({'error': str(error)}), 403


@app.before_request
def enforce_school_status():
    """Sessions of suspended or inactive schools are closed."""
    endpoint = request.endpoint or ''
    if endpoint in {'static', 'login', 'logout', 'home', 'csrf_token'}:
        return None
    school_id = session.get('school_id')
    if not school_id or session.get('role') == 'super_admin':
        return None
    school = get_school(school_id)
    if not school or school.get('status') != 'active':
        status = (school or {}).get('status', 'missing')
        session.clear()
        return jsonify({'error': f'School account is {status}. Contact the platform administrator.', 'school_status': status}), 403
    return None


# ==================== AUTH ====================

@app.route('/')
def home():
    return jsonify({'service': 'schoolflow', 'logged_in': bool(session.get('user_id')), 'role': session.get('role')})


@app.route('/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/auth/login', methods=['POST'])
def login():
    """Single login for all users; the role comes from the account."""
    form = LoginForm()
    if not form.validate():
        return jsonify({'error': 'Please enter email and password.'}), 400
    email = form.email.data.strip().lower()
    password = form.password.data
    client_ip = get_client_ip()
    user_agent = request.headers.get('User-Agent', '')
    blocked, wait_minutes = is_login_blocked('login', email, client_ip)
    if blocked:
        return jsonify({'error': f'Too many failed login attempts. Try again in about {wait_minutes} minute(s).'}), 429

    user = get_user_by_email(email)
    if not user or not check_password(user['password_hash'], password):
        register_failed_login('login', email, client_ip)
        record_login(user['id'] if user else None, email, False, client_ip, user_agent)
        return jsonify({'error': 'Invalid email or password.'}), 401
    if user.get('status') != 'active':
        return jsonify({'error': f"Your account is {user.get('status')}. Contact your administrator."}), 403
    if user['role'] != 'super_admin':
        school = get_school(user.get('school_id')) if user.get('school_id') else None
        if not school:
            return jsonify({'error': 'Account is linked to an invalid school. Contact administrator.'}), 403
        if school.get('status') != 'active':
            return jsonify({'error': f"School account is {school.get('status')}.", 'school_status': school.get('status')}), 403

    clear_failed_login('login', email, client_ip)
    record_login(user['id'], email, True, client_ip, user_agent)
    session.clear()
    session['user_id'] = user['id']
    session['role'] = user['role']
    session['school_id'] = user.get('school_id')
    session['name'] = user_display_name(user)
    logging.info("User %s logged in as %s", user['id'], user['role'])
    return jsonify({'user_id': user['id'], 'role': user['role'], 'school_id': user.get('school_id'), 'name': session['name']})


@app.route('/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'ok': True})


@app.route('/auth/me')
@role_required('super_admin', 'school_admin', 'teacher', 'student', 'parent')
def auth_me():
    user = get_user(session['user_id']) or {}
    user.pop('password_hash', None)
    return jsonify(user)


@app.route('/auth/profile', methods=['POST'])
@role_required('super_admin', 'school_admin', 'teacher', 'student', 'parent')
def auth_update_profile():
    data = request_data()
    update_profile(session['user_id'], **pick(data, 'first_name', 'last_name', 'phone'))
    return jsonify({'ok': True})


@app.route('/auth/change-password', methods=['POST'])
@role_required('super_admin', 'school_admin', 'teacher', 'student', 'parent')
def auth_change_password():
    form = ChangePasswordForm()
    if not form.validate():
        return jsonify({'error': form_errors(form)}), 400
    change_password(session['user_id'], form.current_password.data, form.new_password.data)
    record_audit_log(current_school_id(), session['user_id'], session.get('name'), 'change_password', 'users',
                     session['user_id'], ip_address=get_client_ip())
    return jsonify({'ok': True})


@app.route('/auth/login-history')
@role_required('super_admin', 'school_admin', 'teacher', 'student', 'parent')
def auth_login_history():
    return jsonify(login_history(session['user_id']))


@app.route('/api/notifications')
@role_required('super_admin', 'school_admin', 'teacher', 'student', 'parent')
def api_notifications():
    unread_only = request.args.get('unread') in ('1', 'true', 'yes')
    return jsonify(list_notifications(session['user_id'], unread_only=unread_only))


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@role_required('super_admin', 'school_admin', 'teacher', 'student', 'parent')
def api_notification_read(notification_id):
    mark_notification_read(notification_id, session['user_id'])
    return jsonify({'ok': True})


@app.route('/api/notifications/read-all', methods=['POST'])
@role_required('super_admin', 'school_admin', 'teacher', 'student', 'parent')
def api_notifications_read_all():
    return jsonify({'marked': mark_all_notifications_read(session['user_id'])})


# ==================== SUPER ADMIN ROUTES ====================

@app.route('/super-admin/dashboard')
@role_required('super_admin')
def super_admin_dashboard():
    return jsonify({
        'platform': get_platform_stats(),
        'pending_requests': len(list_subscription_requests(status='pending_approval')),
        'subscription_payments': subscription_payment_stats(),
    })


@app.route('/super-admin/schools', methods=['GET', 'POST'])
@role_required('super_admin')
def super_admin_schools():
    if request.method == 'GET':
        return jsonify(list_schools(request.args.get('status') or None))
    data = request_data()
    result = create_school_with_admin(
        data.get('name'), data.get('admin_email'), data.get('admin_password'),
        **pick(data, 'admin_first_name', 'admin_last_name', 'email', 'phone', 'address', 'motto', 'principal_name', 'plan'),
    )
    user = current_user()
    record_audit_log(result['school_id'], user['id'], user['name'], 'create_school', 'schools', result['school_id'],
                     data.get('name'), get_client_ip())
    return jsonify(result), 201


@app.route('/super-admin/schools/<int:school_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('super_admin')
def super_admin_school(school_id):
    if request.method == 'GET':
        school = get_school(school_id)
        if not school:
            raise LookupError('School not found.')
        return jsonify(school)
    if request.method == 'DELETE':
        delete_school(school_id)
        return jsonify({'ok': True})
    update_school(school_id, **request_data())
    return jsonify({'ok': True})


@app.route('/super-admin/schools/<int:school_id>/status', methods=['POST'])
@role_required('super_admin')
def super_admin_school_status(school_id):
    data = request_data()
    update_school_status(school_id, data.get('status'))
    user = current_user()
    record_audit_log(school_id, user['id'], user['name'], 'update_school_status', 'schools', school_id,
                     data.get('status'), get_client_ip())
    return jsonify({'ok': True})


@app.route('/super-admin/schools/<int:school_id>/plan', methods=['POST'])
@role_required('super_admin')
def super_admin_school_plan(school_id):
    update_school_plan(school_id, request_data().get('plan'))
    return jsonify({'ok': True})


@app.route('/super-admin/users')
@role_required('super_admin')
def super_admin_users():
    school_id = request.args.get('school_id', type=int)
    return jsonify(list_users(school_id=school_id, role=request.args.get('role') or None))


@app.route('/super-admin/users/<int:user_id>/status', methods=['POST'])
@role_required('super_admin')
def super_admin_user_status(user_id):
    set_user_status(user_id, request_data().get('status'))
    return jsonify({'ok': True})


@app.route('/super-admin/users/<int:user_id>/reset-password', methods=['POST'])
@role_required('super_admin')
def super_admin_reset_password(user_id):
    reset_password(user_id, request_data().get('new_password'))
    user = current_user()
    record_audit_log(None, user['id'], user['name'], 'reset_password', 'users', user_id, ip_address=get_client_ip())
    return jsonify({'ok': True})


@app.route('/super-admin/audit-logs')
@role_required('super_admin')
def super_admin_audit_logs():
    return jsonify(list_audit_logs(request.args.get('school_id', type=int), request.args.get('limit', 50, type=int)))


@app.route('/super-admin/plans', methods=['GET', 'POST'])
@role_required('super_admin')
def super_admin_plans():
    if request.method == 'GET':
        return jsonify(list_plans(active_only=False))
    data = request_data()
    plan_id = create_plan(
        data.get('name'), data.get('display_name'), data.get('price'),
        **pick(data, 'features', 'max_students', 'max_teachers', 'max_classes', 'billing_period', 'description', 'is_popular'),
    )
    return jsonify({'plan_id': plan_id}), 201


@app.route('/super-admin/plans/<int:plan_id>', methods=['PATCH'])
@role_required('super_admin')
def super_admin_plan(plan_id):
    update_plan(plan_id, **request_data())
    return jsonify({'ok': True})


@app.route('/super-admin/subscription-requests')
@role_required('super_admin')
def super_admin_subscription_requests():
    return jsonify(list_subscription_requests(status=request.args.get('status') or None,
                                              school_id=request.args.get('school_id', type=int)))


@app.route('/super-admin/subscription-requests/<int:request_id>/approve', methods=['POST'])
@role_required('super_admin')
def super_admin_approve_request(request_id):
    approve_subscription_request(request_id, current_user())
    return jsonify({'ok': True})


@app.route('/super-admin/subscription-requests/<int:request_id>/reject', methods=['POST'])
@role_required('super_admin')
def super_admin_reject_request(request_id):
    reject_subscription_request(request_id, request_data().get('reason'), current_user())
    return jsonify({'ok': True})


@app.route('/super-admin/trials/check', methods=['POST'])
@role_required('super_admin')
def super_admin_check_trials():
    return jsonify(check_trials(triggered_by=current_user()))


@app.route('/super-admin/subscription-payments', methods=['GET', 'POST'])
@role_required('super_admin')
def super_admin_subscription_payments():
    if request.method == 'GET':
        return jsonify(subscription_payment_stats())
    data = request_data()
    payment_id = record_subscription_payment(data.get('school_id'), data.get('amount'), data.get('due_date'),
                                             data.get('reference', ''), data.get('request_id'))
    return jsonify({'payment_id': payment_id}), 201


@app.route('/super-admin/subscription-payments/<int:payment_id>/paid', methods=['POST'])
@role_required('super_admin')
def super_admin_subscription_payment_paid(payment_id):
    mark_subscription_payment_paid(payment_id, request_data().get('reference', ''))
    return jsonify({'ok': True})


@app.route('/super-admin/subscription-payments/mark-overdue', methods=['POST'])
@role_required('super_admin')
def super_admin_subscription_payments_overdue():
    return jsonify({'marked': mark_overdue_subscription_payments()})


@app.route('/super-admin/support')
@role_required('super_admin')
def super_admin_support_tickets():
    args = request.args
    if args.get('stats'):
        return jsonify(ticket_stats(args.get('school_id', type=int)))
    return jsonify(list_tickets(args.get('school_id', type=int), status=args.get('status') or None,
                                priority=args.get('priority') or None, assigned_to=args.get('assigned_to', type=int),
                                unassigned_only=bool(args.get('unassigned'))))


@app.route('/super-admin/support/<int:ticket_id>', methods=['GET', 'PATCH'])
@role_required('super_admin')
def super_admin_support_ticket(ticket_id):
    user = current_user()
    if request.method == 'PATCH':
        data = request_data()
        if 'status' in data:
            update_ticket_status(ticket_id, data['status'], user)
        if 'priority' in data:
            update_ticket_priority(ticket_id, data['priority'], user)
        if 'assigned_to' in data:
            assign_ticket(ticket_id, data['assigned_to'], user)
    return jsonify(get_ticket(ticket_id, user))


# ==================== SCHOOL ADMIN ROUTES ====================

@app.route('/school-admin/dashboard')
@role_required('school_admin')
def school_admin_dashboard():
    school_id = current_school_id()
    return jsonify({
        'school': get_school(school_id),
        'stats': get_school_stats(school_id),
        'current_year': get_current_academic_year(school_id),
        'current_term': get_current_term(school_id),
        'recent_activities': recent_activities(school_id),
        'upcoming_events': upcoming_events(school_id, limit=5),
    })


@app.route('/school-admin/activities')
@role_required('school_admin')
def school_admin_activities():
    return jsonify(recent_activities(current_school_id(), request.args.get('limit', 10, type=int)))


@app.route('/school-admin/settings', methods=['GET', 'PATCH'])
@role_required('school_admin')
def school_admin_settings():
    school_id = current_school_id()
    if request.method == 'PATCH':
        update_school(school_id, **request_data())
    return jsonify(get_school(school_id))


@app.route('/school-admin/users', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_users():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_users(school_id=school_id, role=request.args.get('role') or None))
    data = request_data()
    if data.get('role') not in ('school_admin', 'parent'):
        raise ValueError('School admins can create other admins and parents here. Use the teacher and student endpoints for those roles.')
    user_id = create_user(data.get('email'), data.get('password'), data.get('role'), school_id,
                          data.get('first_name', ''), data.get('last_name', ''), data.get('phone', ''))
    return jsonify({'user_id': user_id}), 201


# ---------- academic years and terms ----------

@app.route('/school-admin/academic-years', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_academic_years():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_academic_years(school_id))
    data = request_data()
    year_id = add_academic_year(school_id, data.get('name'), data.get('start_date'), data.get('end_date'),
                                bool(data.get('set_as_current')), current_user())
    return jsonify({'academic_year_id': year_id}), 201


@app.route('/school-admin/academic-years/<int:year_id>/current', methods=['POST'])
@role_required('school_admin')
def school_admin_set_current_year(year_id):
    set_current_year(current_school_id(), year_id)
    return jsonify({'ok': True})


@app.route('/school-admin/academic-years/<int:year_id>/status', methods=['POST'])
@role_required('school_admin')
def school_admin_year_status(year_id):
    update_year_status(current_school_id(), year_id, request_data().get('status'))
    return jsonify({'ok': True})


@app.route('/school-admin/academic-years/<int:year_id>', methods=['DELETE'])
@role_required('school_admin')
def school_admin_delete_year(year_id):
    delete_academic_year(current_school_id(), year_id)
    return jsonify({'ok': True})


@app.route('/school-admin/terms', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_terms():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_terms(school_id, request.args.get('academic_year_id', type=int)))
    data = request_data()
    term_id = add_term(school_id, data.get('academic_year_id'), data.get('name'), data.get('term_number'),
                       data.get('start_date'), data.get('end_date'), data.get('holidays'),
                       bool(data.get('set_as_current')), current_user())
    return jsonify({'term_id': term_id}), 201


@app.route('/school-admin/terms/<int:term_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_term(term_id):
    if request.method == 'DELETE':
        delete_term(current_school_id(), term_id)
    else:
        update_term(current_school_id(), term_id, **pick(request_data(), 'name', 'start_date', 'end_date', 'holidays', 'status'))
    return jsonify({'ok': True})


@app.route('/school-admin/terms/<int:term_id>/current', methods=['POST'])
@role_required('school_admin')
def school_admin_set_current_term(term_id):
    set_current_term(current_school_id(), term_id, current_user())
    return jsonify({'ok': True})


# ---------- classes and subjects ----------

@app.route('/school-admin/classes', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_classes():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_classes(school_id, request.args.get('department') or None, request.args.get('status') or None))
    check_plan_limit(school_id, 'classes')
    data = request_data()
    class_id = create_class(school_id, data.get('name'),
                            **pick(data, 'level', 'department', 'academic_year_id', 'capacity', 'class_teacher_id'))
    return jsonify({'class_id': class_id}), 201


@app.route('/school-admin/classes/<int:class_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_class(class_id):
    school_id = current_school_id()
    if request.method == 'GET':
        cls = get_class(school_id, class_id)
        if not cls:
            raise LookupError('Class not found.')
        cls['subjects'] = class_subjects(class_id)
        return jsonify(cls)
    if request.method == 'DELETE':
        delete_class(school_id, class_id)
    else:
        update_class(school_id, class_id, **request_data())
    return jsonify({'ok': True})


@app.route('/school-admin/classes/<int:class_id>/subjects', methods=['POST'])
@role_required('school_admin')
def school_admin_class_subjects(class_id):
    set_class_subjects(current_school_id(), class_id, id_list(request_data(), 'subject_ids'))
    return jsonify({'ok': True})


@app.route('/school-admin/sections', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_sections():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_sections(school_id, request.args.get('class_id', type=int)))
    data = request_data()
    section_id = create_section(school_id, data.get('class_id'), data.get('name'), data.get('capacity'),
                                **pick(data, 'class_teacher_id', 'room'))
    return jsonify({'section_id': section_id}), 201


@app.route('/school-admin/sections/<int:section_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_section(section_id):
    if request.method == 'DELETE':
        delete_section(current_school_id(), section_id)
    else:
        update_section(current_school_id(), section_id, **pick(request_data(), 'name', 'capacity', 'class_teacher_id', 'room'))
    return jsonify({'ok': True})


@app.route('/school-admin/sections/<int:section_id>/students', methods=['POST'])
@role_required('school_admin')
def school_admin_section_students(section_id):
    moved = assign_students_to_section(current_school_id(), section_id, id_list(request_data(), 'student_ids'))
    return jsonify({'assigned': moved})


# ---------- timetables ----------

@app.route('/school-admin/timetables', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_timetables():
    school_id = current_school_id()
    if request.method == 'GET':
        class_id = request.args.get('class_id', type=int)
        if class_id and request.args.get('full'):
            return jsonify(timetable_for_class(school_id, class_id))
        return jsonify(list_timetables(school_id, class_id, request.args.get('status') or None))
    data = request_data()
    timetable_id = create_timetable(school_id, data.get('class_id'), user=current_user(),
                                    **pick(data, 'name', 'periods', 'academic_year_id', 'term_id'))
    return jsonify({'timetable_id': timetable_id}), 201


@app.route('/school-admin/timetables/bulk-delete', methods=['POST'])
@role_required('school_admin')
def school_admin_delete_timetables():
    return jsonify({'deleted': delete_timetables(current_school_id(), id_list(request_data()))})


@app.route('/school-admin/timetables/<int:timetable_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_timetable(timetable_id):
    school_id = current_school_id()
    if request.method == 'DELETE':
        delete_timetables(school_id, [timetable_id])
        return jsonify({'ok': True})
    if request.method == 'PATCH':
        update_timetable(school_id, timetable_id, **pick(request_data(), 'name', 'status'))
    return jsonify(get_timetable(school_id, timetable_id))


@app.route('/school-admin/timetables/<int:timetable_id>/conflicts')
@role_required('school_admin')
def school_admin_timetable_conflicts(timetable_id):
    conflicts = check_timetable_conflicts(current_school_id(), timetable_id)
    return jsonify({'conflicts': conflicts, 'errors': sum(1 for item in conflicts if item['severity'] == 'error')})


@app.route('/school-admin/timetables/<int:timetable_id>/clone', methods=['POST'])
@role_required('school_admin')
def school_admin_clone_timetable(timetable_id):
    data = request_data()
    result = clone_timetable(current_school_id(), timetable_id, data.get('class_id'), data.get('name', ''),
                             bool(data.get('include_assignments')), current_user())
    return jsonify(result), 201


@app.route('/school-admin/timetables/<int:timetable_id>/template', methods=['POST'])
@role_required('school_admin')
def school_admin_save_timetable_template(timetable_id):
    data = request_data()
    template_id = save_as_template(current_school_id(), timetable_id, data.get('name'), data.get('description', ''),
                                   current_user())
    return jsonify({'template_id': template_id}), 201


@app.route('/school-admin/periods/<int:period_id>', methods=['PATCH'])
@role_required('school_admin')
def school_admin_period(period_id):
    data = request_data()
    duration = update_period(current_school_id(), period_id, data.get('start_time'), data.get('end_time'),
                             **pick(data, 'period_name', 'is_break'))
    return jsonify({'duration': duration})


@app.route('/school-admin/periods/<int:period_id>/assignment', methods=['POST'])
@role_required('school_admin')
def school_admin_assign_period(period_id):
    data = request_data()
    assignment_id = assign_teacher(current_school_id(), period_id, data.get('subject_id'), data.get('teacher_id'),
                                   user=current_user(), **pick(data, 'room', 'notes'))
    return jsonify({'assignment_id': assignment_id}), 201


@app.route('/school-admin/timetable-assignments/<int:assignment_id>', methods=['DELETE'])
@role_required('school_admin')
def school_admin_remove_timetable_assignment(assignment_id):
    remove_assignment(current_school_id(), assignment_id)
    return jsonify({'ok': True})


@app.route('/school-admin/teachers/<int:teacher_id>/timetable')
@role_required('school_admin')
def school_admin_teacher_timetable(teacher_id):
    return jsonify(teacher_timetable(current_school_id(), teacher_id))


@app.route('/school-admin/timetable-templates', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_timetable_templates():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_templates(school_id))
    data = request_data()
    timetable_id = apply_template(school_id, data.get('template_id'), data.get('class_id'), data.get('name', ''),
                                  current_user())
    return jsonify({'timetable_id': timetable_id}), 201


@app.route('/school-admin/timetable-templates/<int:template_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_timetable_template(template_id):
    if request.method == 'DELETE':
        archive_template(current_school_id(), template_id)
    else:
        update_template(current_school_id(), template_id, **pick(request_data(), 'name', 'description'))
    return jsonify({'ok': True})


@app.route('/school-admin/subjects', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_subjects():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_subjects(school_id, request.args.get('department') or None, request.args.get('status') or None))
    data = request_data()
    if 'subjects' in data:
        return jsonify(bulk_create_subjects(school_id, data['subjects'])), 201
    subject_id = create_subject(school_id, data.get('name'), **pick(data, 'department', 'is_core', 'subject_code'))
    return jsonify({'subject_id': subject_id}), 201


@app.route('/school-admin/subjects/<int:subject_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_subject(subject_id):
    if request.method == 'DELETE':
        delete_subject(current_school_id(), subject_id)
    else:
        update_subject(current_school_id(), subject_id, **pick(request_data(), 'name', 'department', 'is_core', 'status'))
    return jsonify({'ok': True})


@app.route('/school-admin/subjects/status', methods=['POST'])
@role_required('school_admin')
def school_admin_subjects_status():
    data = request_data()
    return jsonify({'updated': bulk_update_subject_status(current_school_id(), id_list(data), data.get('status'))})


@app.route('/school-admin/subject-assignments', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_subject_assignments():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_subject_assignments(school_id, request.args.get('class_id', type=int)))
    data = request_data()
    assignment_id = assign_subject_teacher(school_id, data.get('teacher_id'), data.get('subject_id'), data.get('class_id'))
    return jsonify({'assignment_id': assignment_id}), 201


@app.route('/school-admin/subject-assignments/<int:assignment_id>', methods=['DELETE'])
@role_required('school_admin')
def school_admin_remove_assignment(assignment_id):
    remove_subject_teacher(current_school_id(), assignment_id)
    return jsonify({'ok': True})


# ---------- teachers and students ----------

@app.route('/school-admin/teachers', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_teachers():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_teachers(school_id, request.args.get('status') or None,
                                     request.args.get('department') or None, request.args.get('search', '')))
    check_plan_limit(school_id, 'teachers')
    data = request_data()
    result = create_teacher(school_id, data.get('email'), data.get('password'), data.get('first_name'), data.get('last_name'),
                            **pick(data, 'phone', 'qualification', 'department', 'specialization', 'joining_date'))
    return jsonify(result), 201


@app.route('/school-admin/teachers/<int:teacher_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_teacher(teacher_id):
    school_id = current_school_id()
    if request.method == 'GET':
        teacher = get_teacher(school_id, teacher_id)
        if not teacher:
            raise LookupError('Teacher not found.')
        teacher['classes'] = teacher_classes(school_id, teacher_id)
        return jsonify(teacher)
    if request.method == 'DELETE':
        delete_teacher(school_id, teacher_id)
    else:
        update_teacher(school_id, teacher_id, **request_data())
    return jsonify({'ok': True})


@app.route('/school-admin/teachers/status', methods=['POST'])
@role_required('school_admin')
def school_admin_teachers_status():
    data = request_data()
    return jsonify({'updated': bulk_update_teacher_status(current_school_id(), id_list(data), data.get('status'))})


@app.route('/school-admin/students', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_students():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_students(school_id, request.args.get('class_id', type=int),
                                     request.args.get('status') or None, request.args.get('search', '')))
    check_plan_limit(school_id, 'students')
    data = request_data()
    result = create_student(
        school_id, data.get('first_name'), data.get('last_name'), data.get('class_id'),
        **pick(data, 'email', 'password', 'admission_number', 'date_of_birth', 'gender', 'guardian_name', 'guardian_phone',
               'parent_user_id', 'emergency_contact_name', 'emergency_contact_phone', 'address'),
    )
    return jsonify(result), 201


@app.route('/school-admin/students/next-admission-number')
@role_required('school_admin')
def school_admin_next_admission_number():
    return jsonify({'admission_number': generate_admission_number(current_school_id())})


@app.route('/school-admin/students/<int:student_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_student(student_id):
    school_id = current_school_id()
    if request.method == 'GET':
        student = get_student(school_id, student_id)
        if not student:
            raise LookupError('Student not found.')
        return jsonify(student)
    if request.method == 'DELETE':
        delete_student(school_id, student_id)
    else:
        update_student(school_id, student_id, **request_data())
    return jsonify({'ok': True})


@app.route('/school-admin/students/<int:student_id>/parent', methods=['POST'])
@role_required('school_admin')
def school_admin_link_parent(student_id):
    link_parent(current_school_id(), student_id, request_data().get('parent_user_id'))
    return jsonify({'ok': True})


@app.route('/school-admin/students/promote', methods=['POST'])
@role_required('school_admin')
def school_admin_promote():
    data = request_data()
    student_ids = id_list(data, 'student_ids') if data.get('student_ids') else None
    result = promote_students(current_school_id(), data.get('from_class_id'), data.get('to_class_id'), student_ids)
    user = current_user()
    record_audit_log(current_school_id(), user['id'], user['name'], 'promote_students', 'classes',
                     data.get('from_class_id'), f"to class {data.get('to_class_id') or 'graduated'}", get_client_ip())
    return jsonify(result)


# ---------- grading scales ----------

@app.route('/school-admin/grading-scales', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_grading_scales():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_grading_scales(school_id))
    data = request_data()
    scale_id = create_grading_scale(school_id, data.get('name'), data.get('bands'), data.get('department'),
                                    bool(data.get('is_default')))
    return jsonify({'scale_id': scale_id}), 201


@app.route('/school-admin/grading-scales/<int:scale_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_grading_scale(scale_id):
    school_id = current_school_id()
    if request.method == 'GET':
        scale = get_grading_scale(school_id, scale_id)
        if not scale:
            raise LookupError('Grading scale not found.')
        return jsonify(scale)
    if request.method == 'DELETE':
        delete_grading_scale(school_id, scale_id)
    else:
        update_grading_scale(school_id, scale_id, **pick(request_data(), 'name', 'bands', 'department', 'status'))
    return jsonify({'ok': True})


@app.route('/school-admin/grading-scales/<int:scale_id>/default', methods=['POST'])
@role_required('school_admin')
def school_admin_default_grading_scale(scale_id):
    set_default_grading_scale(current_school_id(), scale_id)
    return jsonify({'ok': True})


# ---------- exams and marks ----------

EXAM_FIELDS = ('name', 'exam_type', 'start_date', 'end_date', 'department', 'class_ids', 'subject_ids', 'total_marks',
               'weightage', 'status')


@app.route('/school-admin/exams', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_exams():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_exams(school_id, request.args.get('term_id', type=int), request.args.get('status') or None,
                                  request.args.get('class_id', type=int)))
    data = request_data()
    result = create_exam(
        school_id, data.get('name'), data.get('exam_type'),
        user=current_user(),
        **pick(data, 'academic_year_id', 'term_id', 'start_date', 'end_date', 'department', 'class_ids', 'subject_ids',
               'total_marks', 'weightage'),
    )
    return jsonify(result), 201


@app.route('/school-admin/exams/<int:exam_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_exam(exam_id):
    school_id = current_school_id()
    if request.method == 'GET':
        exam = get_exam(school_id, exam_id)
        if not exam:
            raise LookupError('Exam not found.')
        exam['marks_stats'] = exam_marks_stats(school_id, exam_id)
        return jsonify(exam)
    if request.method == 'DELETE':
        delete_exam(school_id, exam_id)
        return jsonify({'ok': True})
    data = request_data()
    exam = update_exam(school_id, exam_id, user=current_user(), role='school_admin',
                       admin_override=bool(data.get('admin_override')), **pick(data, *EXAM_FIELDS))
    return jsonify(exam)


@app.route('/school-admin/exams/<int:exam_id>/unlock', methods=['POST'])
@role_required('school_admin')
def school_admin_unlock_exam(exam_id):
    unlock_exam(current_school_id(), exam_id, request_data().get('reason'), current_user())
    return jsonify({'ok': True})


@app.route('/school-admin/exams/<int:exam_id>/lock', methods=['POST'])
@role_required('school_admin')
def school_admin_lock_exam(exam_id):
    lock_exam(current_school_id(), exam_id, current_user())
    return jsonify({'ok': True})


@app.route('/school-admin/exams/<int:exam_id>/marks', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_marks(exam_id):
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_marks(school_id, exam_id, request.args.get('class_id', type=int),
                                  request.args.get('subject_id', type=int), request.args.get('student_id', type=int)))
    data = request_data()
    override = bool(data.get('admin_override'))
    if 'rows' in data:
        return jsonify(quick_enter_marks(school_id, exam_id, data['rows'], current_user(), 'school_admin', override))
    result = enter_marks(
        school_id, exam_id, data.get('student_id'), data.get('subject_id'),
        user=current_user(), role='school_admin', admin_override=override,
        **pick(data, 'class_score', 'exam_score', 'max_marks', 'is_absent', 'remarks', 'reason'),
    )
    return jsonify(result), 201


@app.route('/school-admin/marks/<int:mark_id>', methods=['DELETE'])
@role_required('school_admin')
def school_admin_delete_mark(mark_id):
    delete_mark(current_school_id(), mark_id, 'school_admin')
    return jsonify({'ok': True})


@app.route('/school-admin/marks/verify', methods=['POST'])
@role_required('school_admin')
def school_admin_verify_marks():
    return jsonify({'verified': verify_marks(current_school_id(), id_list(request_data()), current_user()['id'], 'school_admin')})


@app.route('/school-admin/exams/<int:exam_id>/positions', methods=['POST'])
@role_required('school_admin')
def school_admin_subject_positions(exam_id):
    data = request_data()
    return jsonify(calculate_subject_positions(current_school_id(), exam_id, data.get('subject_id'), data.get('class_id')))


@app.route('/school-admin/exams/<int:exam_id>/analytics')
@role_required('school_admin')
def school_admin_exam_analytics(exam_id):
    school_id = current_school_id()
    class_id = request.args.get('class_id', type=int)
    result = {'subjects': subject_performance(school_id, exam_id, class_id), 'stats': exam_marks_stats(school_id, exam_id)}
    if class_id:
        result['class_summary'] = class_grade_summary(school_id, exam_id, class_id)
        result['distribution'] = class_performance_distribution(school_id, exam_id, class_id)
    return jsonify(result)


@app.route('/school-admin/students/<int:student_id>/performance')
@role_required('school_admin')
def school_admin_student_performance(student_id):
    return jsonify(student_performance_trends(current_school_id(), student_id))


# ---------- report cards ----------

REPORT_FIELDS = ('conduct', 'attitude', 'interest', 'class_teacher_comment', 'headmaster_comment', 'promoted_to',
                 'vacation_date', 'reopening_date', 'attendance')


@app.route('/school-admin/report-cards', methods=['GET'])
@role_required('school_admin')
def school_admin_report_cards():
    return jsonify(list_report_cards(current_school_id(), request.args.get('class_id', type=int),
                                     request.args.get('term_id', type=int), request.args.get('status') or None))


@app.route('/school-admin/report-cards/drafts')
@role_required('school_admin')
def school_admin_draft_report_cards():
    return jsonify(list_draft_report_cards(current_school_id(), request.args.get('class_id', type=int)))


@app.route('/school-admin/report-cards/generate', methods=['POST'])
@role_required('school_admin')
def school_admin_generate_report_cards():
    data = request_data()
    extras = pick(data, *REPORT_FIELDS)
    if data.get('student_id'):
        return jsonify(generate_report_card(current_school_id(), data.get('exam_id'), data['student_id'], current_user(), **extras)), 201
    return jsonify(generate_class_report_cards(current_school_id(), data.get('exam_id'), data.get('class_id'),
                                               current_user(), **extras)), 201


@app.route('/school-admin/report-cards/<int:report_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_report_card(report_id):
    school_id = current_school_id()
    if request.method == 'GET':
        card = get_report_card(school_id, report_id)
        if not card:
            raise LookupError('Report card not found.')
        return jsonify(card)
    if request.method == 'DELETE':
        delete_report_card(school_id, report_id)
    else:
        update_report_card(school_id, report_id, **pick(request_data(), *REPORT_FIELDS))
    return jsonify({'ok': True})


@app.route('/school-admin/report-cards/<int:report_id>/review', methods=['POST'])
@role_required('school_admin')
def school_admin_review_report_card(report_id):
    data = request_data()
    status = review_report_card(current_school_id(), report_id, current_user(), bool(data.get('verify_and_approve')),
                                **pick(data, *REPORT_FIELDS))
    return jsonify({'status': status})


@app.route('/school-admin/report-cards/approve', methods=['POST'])
@role_required('school_admin')
def school_admin_approve_report_cards():
    return jsonify(bulk_approve_report_cards(current_school_id(), id_list(request_data()), current_user()))


@app.route('/school-admin/report-cards/publish', methods=['POST'])
@role_required('school_admin')
def school_admin_publish_report_cards():
    published = publish_report_cards(current_school_id(), id_list(request_data()), current_user(), role='admin')
    return jsonify({'published': published})


@app.route('/school-admin/report-cards/<int:report_id>/unpublish', methods=['POST'])
@role_required('school_admin')
def school_admin_unpublish_report_card(report_id):
    unpublish_report_card(current_school_id(), report_id, request_data().get('reason'), current_user())
    return jsonify({'ok': True})


@app.route('/school-admin/report-cards/<int:report_id>/archive', methods=['POST'])
@role_required('school_admin')
def school_admin_archive_report_card(report_id):
    archive_report_card(current_school_id(), report_id)
    return jsonify({'ok': True})


@app.route('/school-admin/report-cards/delete', methods=['POST'])
@role_required('school_admin')
def school_admin_bulk_delete_report_cards():
    return jsonify({'deleted': bulk_delete_report_cards(current_school_id(), id_list(request_data()))})


# ---------- attendance ----------

@app.route('/school-admin/attendance', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_attendance():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_attendance(school_id, request.args.get('class_id', type=int), request.args.get('start_date'),
                                       request.args.get('end_date'), request.args.get('date')))
    data = request_data()
    result = create_attendance(school_id, data.get('class_id'), data.get('date'), data.get('session', 'morning'), current_user())
    return jsonify(result), 201


@app.route('/school-admin/attendance/today')
@role_required('school_admin')
def school_admin_attendance_today():
    school_id = current_school_id()
    return jsonify({'sessions': today_attendance(school_id), 'pending_classes': pending_attendance_classes(school_id)})


@app.route('/school-admin/attendance/bulk', methods=['POST'])
@role_required('school_admin')
def school_admin_bulk_attendance():
    data = request_data()
    result = bulk_mark_attendance(current_school_id(), id_list(data, 'class_ids'), data.get('date'),
                                  data.get('session', 'morning'), data.get('default_status', 'present'), current_user())
    return jsonify(result)


@app.route('/school-admin/attendance/<int:attendance_id>', methods=['GET', 'DELETE'])
@role_required('school_admin')
def school_admin_attendance_session(attendance_id):
    school_id = current_school_id()
    if request.method == 'DELETE':
        delete_attendance(school_id, attendance_id)
        return jsonify({'ok': True})
    attendance = get_attendance(school_id, attendance_id)
    if not attendance:
        raise LookupError('Attendance not found.')
    attendance['records'] = attendance_records(school_id, attendance_id)
    return jsonify(attendance)


@app.route('/school-admin/attendance/<int:attendance_id>/records', methods=['POST'])
@role_required('school_admin')
def school_admin_mark_attendance(attendance_id):
    data = request_data()
    if 'records' in data:
        return jsonify(mark_class_attendance(current_school_id(), attendance_id, data['records'], current_user()))
    return jsonify(mark_student_attendance(current_school_id(), attendance_id, data.get('student_id'), data.get('status'),
                                           data.get('remarks', ''), current_user()))


@app.route('/school-admin/attendance/<int:attendance_id>/override', methods=['POST'])
@role_required('school_admin')
def school_admin_override_attendance(attendance_id):
    data = request_data()
    admin_override_attendance(current_school_id(), attendance_id, data.get('student_id'), data.get('status'),
                              data.get('reason'), current_user())
    return jsonify({'ok': True})


@app.route('/school-admin/attendance/<int:attendance_id>/<action>', methods=['POST'])
@role_required('school_admin')
def school_admin_attendance_action(attendance_id, action):
    actions = {'complete': complete_attendance, 'lock': lock_attendance, 'unlock': unlock_attendance}
    if action not in actions:
        raise LookupError('Unknown attendance action.')
    actions[action](current_school_id(), attendance_id, current_user())
    return jsonify({'ok': True})


@app.route('/school-admin/attendance/stats')
@role_required('school_admin')
def school_admin_attendance_stats():
    return jsonify(attendance_stats(current_school_id(), request.args.get('start_date'), request.args.get('end_date')))


@app.route('/school-admin/attendance/settings', methods=['GET', 'PUT'])
@role_required('school_admin')
def school_admin_attendance_settings():
    school_id = current_school_id()
    if request.method == 'PUT':
        return jsonify(save_attendance_settings(school_id, request_data()))
    return jsonify(get_attendance_settings(school_id))


@app.route('/school-admin/students/<int:student_id>/attendance')
@role_required('school_admin')
def school_admin_student_attendance(student_id):
    school_id = current_school_id()
    return jsonify({
        'history': student_attendance_history(school_id, student_id),
        'rate': student_attendance_rate(school_id, student_id),
    })


# ---------- fees ----------

@app.route('/school-admin/fee-categories', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_fee_categories():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_fee_categories(school_id, request.args.get('status') or None))
    data = request_data()
    if 'categories' in data:
        return jsonify(bulk_create_fee_categories(school_id, data['categories'])), 201
    category_id = create_fee_category(school_id, data.get('name'), data.get('description', ''))
    return jsonify({'category_id': category_id}), 201


@app.route('/school-admin/fee-categories/stats')
@role_required('school_admin')
def school_admin_fee_category_stats():
    return jsonify(fee_category_stats(current_school_id()))


@app.route('/school-admin/fee-categories/<int:category_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_fee_category(category_id):
    if request.method == 'DELETE':
        delete_fee_category(current_school_id(), category_id)
    else:
        update_fee_category(current_school_id(), category_id, **pick(request_data(), 'name', 'description', 'status'))
    return jsonify({'ok': True})


@app.route('/school-admin/fee-structures', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_fee_structures():
    school_id = current_school_id()
    if request.method == 'GET':
        class_id = request.args.get('class_id', type=int)
        term_id = request.args.get('term_id', type=int)
        if class_id and request.args.get('effective'):
            return jsonify(structure_for_class(school_id, class_id, term_id))
        return jsonify(list_fee_structures(school_id, class_id, term_id))
    data = request_data()
    structure_id = create_fee_structure(school_id, data.get('name'), data.get('items'),
                                        **pick(data, 'class_id', 'department', 'academic_year_id', 'term_id', 'due_date'))
    return jsonify({'structure_id': structure_id}), 201


@app.route('/school-admin/fee-structures/<int:structure_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_fee_structure(structure_id):
    if request.method == 'DELETE':
        delete_fee_structure(current_school_id(), structure_id)
    else:
        update_fee_structure(current_school_id(), structure_id, **pick(request_data(), 'name', 'items', 'due_date', 'status'))
    return jsonify({'ok': True})


@app.route('/school-admin/discounts', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_discounts():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_discounts(school_id, request.args.get('status') or None, request.args.get('student_id', type=int)))
    data = request_data()
    discount_id = create_discount(
        school_id, data.get('name'), data.get('discount_type'), data.get('value'),
        **pick(data, 'reason', 'applicable_to', 'category_ids', 'student_id', 'start_date', 'end_date'),
    )
    return jsonify({'discount_id': discount_id}), 201


@app.route('/school-admin/discounts/<int:discount_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_discount(discount_id):
    if request.method == 'DELETE':
        delete_discount(current_school_id(), discount_id)
    else:
        set_discount_status(current_school_id(), discount_id, request_data().get('status'))
    return jsonify({'ok': True})


@app.route('/school-admin/payments', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_payments():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_payments(school_id, request.args.get('student_id', type=int), request.args.get('class_id', type=int),
                                     request.args.get('status') or None, bool(request.args.get('outstanding')),
                                     request.args.get('term_id', type=int)))
    data = request_data()
    result = record_payment(
        school_id, data.get('student_id'), data.get('amount_due'), data.get('amount_paid'), data.get('payment_method'),
        user=current_user(),
        **pick(data, 'category_id', 'structure_id', 'payment_date', 'notes', 'academic_year_id', 'term_id'),
    )
    user = current_user()
    record_audit_log(school_id, user['id'], user['name'], 'record_payment', 'fee_payments', result['payment_id'],
                     f"Receipt {result['receipt_number']} ({result['status']})", get_client_ip())
    return jsonify(result), 201


@app.route('/school-admin/payments/stats')
@role_required('school_admin')
def school_admin_payment_stats():
    return jsonify(payment_stats(current_school_id()))


@app.route('/school-admin/payments/<int:payment_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_payment(payment_id):
    school_id = current_school_id()
    if request.method == 'DELETE':
        delete_payment(school_id, payment_id)
        return jsonify({'ok': True})
    if request.method == 'PATCH':
        update_payment(school_id, payment_id, **pick(request_data(), 'amount_paid', 'amount_due', 'payment_method', 'notes'))
    payment = get_payment(school_id, payment_id)
    if not payment:
        raise LookupError('Payment not found.')
    return jsonify(payment)


@app.route('/school-admin/payments/<int:payment_id>/receipt')
@role_required('school_admin')
def school_admin_payment_receipt(payment_id):
    return pdf_download(*fee_receipt_pdf(current_school_id(), payment_id))


@app.route('/school-admin/students/<int:student_id>/fee-statement')
@role_required('school_admin')
def school_admin_fee_statement(student_id):
    return jsonify(student_fee_statement(current_school_id(), student_id, request.args.get('term_id', type=int)))


@app.route('/school-admin/payments/import', methods=['POST'])
@role_required('school_admin')
def school_admin_import_payments():
    rows = request_data().get('payments') or []
    if not isinstance(rows, list):
        raise ValueError('"payments" must be a list.')
    result = bulk_import_payments(current_school_id(), rows, current_user())
    return jsonify(result), 201 if result['saved'] else 400


@app.route('/school-admin/fee-structures/<int:structure_id>/apply', methods=['POST'])
@role_required('school_admin')
def school_admin_apply_fee_structure(structure_id):
    data = request_data()
    result = apply_fee_structure_to_students(current_school_id(), structure_id, id_list(data, 'student_ids'), current_user(),
                                             **pick(data, 'academic_year_id', 'term_id', 'payment_date'))
    return jsonify(result), 201


@app.route('/school-admin/payment-plans', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_payment_plans():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_payment_plans(school_id, request.args.get('student_id', type=int), request.args.get('status') or None))
    data = request_data()
    result = create_payment_plan(
        school_id, data.get('student_id'), data.get('name'), data.get('total_amount'), data.get('installment_count'),
        data.get('frequency'), data.get('start_date'), user=current_user(),
        **pick(data, 'custom_due_dates', 'category_id', 'notes'),
    )
    return jsonify(result), 201


@app.route('/school-admin/payment-plans/upcoming')
@role_required('school_admin')
def school_admin_upcoming_installments():
    return jsonify(upcoming_installments(current_school_id(), request.args.get('days', 7, type=int)))


@app.route('/school-admin/payment-plans/mark-overdue', methods=['POST'])
@role_required('school_admin')
def school_admin_overdue_installments():
    return jsonify({'marked': mark_overdue_installments(current_school_id())})


@app.route('/school-admin/payment-plans/<int:plan_id>', methods=['GET', 'DELETE'])
@role_required('school_admin')
def school_admin_payment_plan(plan_id):
    school_id = current_school_id()
    if request.method == 'DELETE':
        cancel_payment_plan(school_id, plan_id, request.args.get('reason', ''))
        return jsonify({'ok': True})
    plan = get_payment_plan(school_id, plan_id)
    if not plan:
        raise LookupError('Payment plan not found.')
    return jsonify(plan)


@app.route('/school-admin/installments/<int:installment_id>/payments', methods=['POST'])
@role_required('school_admin')
def school_admin_installment_payment(installment_id):
    data = request_data()
    result = record_installment_payment(current_school_id(), installment_id, data.get('amount'),
                                        data.get('payment_method') or 'cash', current_user())
    return jsonify(result), 201


@app.route('/school-admin/fee-reminders', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_fee_reminders():
    school_id = current_school_id()
    if request.method == 'GET':
        if request.args.get('outstanding'):
            return jsonify(students_with_outstanding_fees(school_id, request.args.get('min_amount', 0, type=float)))
        return jsonify(list_fee_reminders(school_id, request.args.get('student_id', type=int),
                                          request.args.get('limit', 100, type=int)))
    data = request_data()
    result = send_fee_reminders(school_id, id_list(data, 'student_ids'), data.get('reminder_type') or 'payment_due',
                                data.get('method') or 'notification', current_user())
    return jsonify(result)


# ---------- subscription ----------

@app.route('/school-admin/subscription', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_subscription():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify({
            'plans': list_plans(),
            'current_plan': (get_school(school_id) or {}).get('subscription_plan'),
            'requests': list_subscription_requests(school_id=school_id),
        })
    data = request_data()
    result = request_subscription(school_id, session.get('user_id'), data.get('plan_name'), bool(data.get('is_trial')))
    return jsonify(result), 201


@app.route('/school-admin/subscription/<int:request_id>/payment-proof', methods=['POST'])
@role_required('school_admin')
def school_admin_payment_proof(request_id):
    data = request_data()
    submit_payment_proof(current_school_id(), request_id, data.get('reference'), data.get('proof', ''))
    return jsonify({'ok': True})


# ---------- events ----------

@app.route('/school-admin/events', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_events():
    school_id = current_school_id()
    if request.method == 'GET':
        if request.args.get('start_date') and request.args.get('end_date') and not request.args.get('search'):
            return jsonify(events_in_range(school_id, request.args['start_date'], request.args['end_date']))
        return jsonify(list_events(school_id, request.args.get('event_type') or None, request.args.get('status') or None,
                                   request.args.get('start_date'), request.args.get('end_date'), request.args.get('search', '')))
    data = request_data()
    fields = {k: v for k, v in data.items() if k not in ('title', 'event_type', 'start_date', 'end_date', 'notify')}
    event_id = create_event(school_id, data.get('title'), data.get('event_type'), data.get('start_date'), data.get('end_date'),
                            user=current_user(), notify=bool(data.get('notify', True)), **fields)
    return jsonify({'event_id': event_id}), 201


@app.route('/school-admin/events/stats')
@role_required('school_admin')
def school_admin_event_stats():
    return jsonify(event_stats(current_school_id()))


@app.route('/school-admin/events/refresh-status', methods=['POST'])
@role_required('school_admin')
def school_admin_refresh_event_statuses():
    return jsonify(refresh_event_statuses(current_school_id()))


@app.route('/school-admin/events/<int:event_id>', methods=['GET', 'PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_event(event_id):
    school_id = current_school_id()
    if request.method == 'GET':
        event = require_event(school_id, event_id)
        if event.get('requires_rsvp'):
            event['rsvp_stats'] = rsvp_stats(school_id, event_id)
        return jsonify(event)
    if request.method == 'DELETE':
        delete_event(school_id, event_id)
    else:
        update_event(school_id, event_id, current_user(), **request_data())
    return jsonify({'ok': True})


@app.route('/school-admin/events/<int:event_id>/cancel', methods=['POST'])
@role_required('school_admin')
def school_admin_cancel_event(event_id):
    cancel_event(current_school_id(), event_id, request_data().get('reason'), current_user())
    return jsonify({'ok': True})


@app.route('/school-admin/events/<int:event_id>/duplicate', methods=['POST'])
@role_required('school_admin')
def school_admin_duplicate_event(event_id):
    data = request_data()
    new_id = duplicate_event(current_school_id(), event_id, data.get('start_date'), data.get('end_date'), current_user())
    return jsonify({'event_id': new_id}), 201


@app.route('/school-admin/events/<int:event_id>/rsvps', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_event_rsvps(event_id):
    school_id = current_school_id()
    if request.method == 'GET':
        if request.args.get('status') == 'pending':
            return jsonify(pending_respondents(school_id, event_id))
        return jsonify(list_rsvps(school_id, event_id, request.args.get('status') or None))
    respondents = []
    for user in list_users(school_id=school_id, role=request_data().get('role') or None):
        if user['role'] in ('teacher', 'student', 'parent') and user.get('status') == 'active':
            respondents.append({'id': user['id'], 'role': user['role'], 'name': user_display_name(user)})
    return jsonify({'invited': create_pending_rsvps(school_id, event_id, respondents)})


# ---------- announcements and logs ----------

@app.route('/school-admin/announcements', methods=['GET', 'POST'])
@role_required('school_admin')
def school_admin_announcements():
    school_id = current_school_id()
    if request.method == 'GET':
        return jsonify(list_announcements(school_id, request.args.get('status') or None))
    data = request_data()
    announcement_id = create_announcement(
        school_id, data.get('title'), data.get('content'), user=current_user(),
        **pick(data, 'audience', 'class_id', 'priority', 'expires_at', 'publish'),
    )
    return jsonify({'announcement_id': announcement_id}), 201


@app.route('/school-admin/announcements/<int:announcement_id>', methods=['PATCH', 'DELETE'])
@role_required('school_admin')
def school_admin_announcement(announcement_id):
    school_id = current_school_id()
    if request.method == 'DELETE':
        delete_announcement(school_id, announcement_id)
        return jsonify({'ok': True})
    data = request_data()
    update_announcement(school_id, announcement_id, **pick(data, 'title', 'content', 'audience', 'class_id', 'priority', 'expires_at'))
    if 'status' in data:
        set_announcement_status(school_id, announcement_id, data['status'])
    return jsonify({'ok': True})


@app.route('/school-admin/audit-logs')
@role_required('school_admin')
def school_admin_audit_logs():
    return jsonify(list_audit_logs(current_school_id(), request.args.get('limit', 50, type=int)))


# ---------- exports ----------

@app.route('/school-admin/export/students')
@role_required('school_admin')
def school_admin_export_students():
    return csv_download(*students_csv(current_school_id(), request.args.get('class_id', type=int),
                                      request.args.get('status') or None))


@app.route('/school-admin/export/attendance/<int:attendance_id>')
@role_required('school_admin')
def school_admin_export_attendance(attendance_id):
    return csv_download(*attendance_csv(current_school_id(), attendance_id))


@app.route('/school-admin/export/exams/<int:exam_id>/marks')
@role_required('school_admin')
def school_admin_export_marks(exam_id):
    return csv_download(*exam_marks_csv(current_school_id(), exam_id, request.args.get('class_id', type=int)))


@app.route('/school-admin/export/payments')
@role_required('school_admin')
def school_admin_export_payments():
    return csv_download(*payments_csv(current_school_id(), request.args.get('student_id', type=int),
                                      request.args.get('class_id', type=int), request.args.get('status') or None))


@app.route('/school-admin/export/report-cards/<int:class_id>')
@role_required('school_admin')
def school_admin_export_report_cards(class_id):
    return csv_download(*report_cards_csv(current_school_id(), class_id, request.args.get('term_id', type=int)))


@app.route('/school-admin/report-cards/<int:report_id>/pdf')
@role_required('school_admin')
def school_admin_report_card_pdf(report_id):
    return pdf_download(*report_card_pdf(current_school_id(), report_id))


# ==================== TEACHER ROUTES ====================

def require_class_teacher(teacher, class_id):
    if not is_class_teacher(current_school_id(), teacher['id'], class_id):
        raise PermissionError('Only the class teacher can do this for the class.')


def teacher_attendance_session(teacher, attendance_id):
    attendance = get_attendance(current_school_id(), attendance_id)
    if not attendance:
        raise LookupError('Attendance not found.')
    require_class_access(teacher, attendance['class_id'])
    return attendance


def teacher_report_card(teacher, report_id):
    card = get_report_card(current_school_id(), report_id)
    if not card:
        raise LookupError('Report card not found.')
    require_class_teacher(teacher, card['class_id'])
    return card


@app.route('/teacher/dashboard')
@role_required('teacher')
def teacher_dashboard():
    teacher = current_teacher()
    school_id = current_school_id()
    return jsonify({
        'teacher': teacher,
        'overview': teacher_overview(school_id, teacher),
        'classes': teacher_classes(school_id, teacher['id']),
        'announcements': announcements_for(school_id, 'teacher', [cl['id'] for cl in teacher_classes(school_id, teacher['id'])]),
        'upcoming_events': upcoming_events(school_id, limit=5),
        'unread_messages': unread_count(school_id, session.get('user_id')),
    })


@app.route('/teacher/classes')
@role_required('teacher')
def teacher_class_list():
    return jsonify(teacher_classes(current_school_id(), current_teacher()['id']))


@app.route('/teacher/timetable')
@role_required('teacher')
def teacher_own_timetable():
    return jsonify(teacher_timetable(current_school_id(), current_teacher()['id']))


@app.route('/teacher/classes/<int:class_id>/students')
@role_required('teacher')
def teacher_class_students(class_id):
    require_class_access(current_teacher(), class_id)
    return jsonify(list_students(current_school_id(), class_id, 'active'))


@app.route('/teacher/exams')
@role_required('teacher')
def teacher_exams():
    return jsonify(list_exams(current_school_id(), request.args.get('term_id', type=int), request.args.get('status') or None,
                              request.args.get('class_id', type=int)))


@app.route('/teacher/attendance', methods=['POST'])
@role_required('teacher')
def teacher_create_attendance():
    data = request_data()
    require_class_access(current_teacher(), data.get('class_id'))
    result = create_attendance(current_school_id(), data.get('class_id'), data.get('date'), data.get('session', 'morning'),
                               current_user())
    return jsonify(result), 201


@app.route('/teacher/attendance/<int:attendance_id>', methods=['GET'])
@role_required('teacher')
def teacher_attendance_detail(attendance_id):
    attendance = teacher_attendance_session(current_teacher(), attendance_id)
    attendance['records'] = attendance_records(current_school_id(), attendance_id)
    return jsonify(attendance)


@app.route('/teacher/attendance/<int:attendance_id>/records', methods=['POST'])
@role_required('teacher')
def teacher_mark_attendance(attendance_id):
    teacher_attendance_session(current_teacher(), attendance_id)
    data = request_data()
    if 'records' in data:
        return jsonify(mark_class_attendance(current_school_id(), attendance_id, data['records'], current_user()))
    return jsonify(mark_student_attendance(current_school_id(), attendance_id, data.get('student_id'), data.get('status'),
                                           data.get('remarks', ''), current_user()))


@app.route('/teacher/attendance/<int:attendance_id>/complete', methods=['POST'])
@role_required('teacher')
def teacher_complete_attendance(attendance_id):
    teacher_attendance_session(current_teacher(), attendance_id)
    complete_attendance(current_school_id(), attendance_id, current_user())
    return jsonify({'ok': True})


@app.route('/teacher/exams/<int:exam_id>/marks', methods=['GET', 'POST'])
@role_required('teacher')
def teacher_marks(exam_id):
    teacher = current_teacher()
    school_id = current_school_id()
    if request.method == 'GET':
        class_id = request.args.get('class_id', type=int)
        require_class_access(teacher, class_id or 0)
        return jsonify(list_marks(school_id, exam_id, class_id, request.args.get('subject_id', type=int)))
    data = request_data()
    rows = data['rows'] if 'rows' in data else [data]
    for row in rows:
        student = get_student(school_id, row.get('student_id'))
        if not student:
            raise LookupError('Student not found.')
        require_class_access(teacher, student['class_id'])
    if 'rows' in data:
        return jsonify(quick_enter_marks(school_id, exam_id, rows, current_user(), 'teacher'))
    result = enter_marks(
        school_id, exam_id, data.get('student_id'), data.get('subject_id'), user=current_user(), role='teacher',
        **pick(data, 'class_score', 'exam_score', 'max_marks', 'is_absent', 'remarks'),
    )
    return jsonify(result), 201


@app.route('/teacher/exams/<int:exam_id>/marks/submit', methods=['POST'])
@role_required('teacher')
def teacher_submit_marks(exam_id):
    own = {m['id'] for m in list_marks(current_school_id(), exam_id) if m.get('entered_by') == session.get('user_id')}
    ids = [mark_id for mark_id in id_list(request_data()) if mark_id in own]
    return jsonify({'submitted': submit_marks(current_school_id(), ids)})


@app.route('/teacher/exams/<int:exam_id>/marks/verify', methods=['POST'])
@role_required('teacher')
def teacher_verify_marks(exam_id):
    data = request_data()
    require_class_teacher(current_teacher(), data.get('class_id'))
    in_class = {m['id'] for m in list_marks(current_school_id(), exam_id, data.get('class_id'))}
    ids = [mark_id for mark_id in id_list(data) if mark_id in in_class]
    return jsonify({'verified': verify_marks(current_school_id(), ids, session.get('user_id'), 'class_teacher')})


@app.route('/teacher/report-cards')
@role_required('teacher')
def teacher_report_cards():
    class_id = request.args.get('class_id', type=int)
    require_class_teacher(current_teacher(), class_id or 0)
    return jsonify(list_report_cards(current_school_id(), class_id, request.args.get('term_id', type=int),
                                     request.args.get('status') or None))


@app.route('/teacher/report-cards/generate', methods=['POST'])
@role_required('teacher')
def teacher_generate_report_cards():
    data = request_data()
    require_class_teacher(current_teacher(), data.get('class_id'))
    result = generate_class_report_cards(current_school_id(), data.get('exam_id'), data.get('class_id'), current_user(),
                                         **pick(data, *REPORT_FIELDS))
    return jsonify(result), 201


@app.route('/teacher/report-cards/<int:report_id>/review', methods=['POST'])
@role_required('teacher')
def teacher_review_report_card(report_id):
    teacher_report_card(current_teacher(), report_id)
    data = request_data()
    status = review_report_card(current_school_id(), report_id, current_user(), bool(data.get('verify_and_approve')),
                                **pick(data, *REPORT_FIELDS))
    return jsonify({'status': status})


@app.route('/teacher/report-cards/publish', methods=['POST'])
@role_required('teacher')
def teacher_publish_report_cards():
    teacher = current_teacher()
    ids = id_list(request_data())
    for report_id in ids:
        teacher_report_card(teacher, report_id)
    return jsonify({'published': publish_report_cards(current_school_id(), ids, current_user(), role='class_teacher')})


@app.route('/teacher/report-cards/<int:report_id>/pdf')
@role_required('teacher')
def teacher_report_card_pdf(report_id):
    teacher_report_card(current_teacher(), report_id)
    return pdf_download(*report_card_pdf(current_school_id(), report_id))


@app.route('/teacher/export/exams/<int:exam_id>/marks')
@role_required('teacher')
def teacher_export_marks(exam_id):
    class_id = request.args.get('class_id', type=int)
    require_class_access(current_teacher(), class_id or 0)
    return csv_download(*exam_marks_csv(current_school_id(), exam_id, class_id))


# ==================== STUDENT AND PARENT ROUTES ====================

def current_student():
    student = get_student_by_user(session.get('user_id'))
    if not student or int(student['school_id']) != int(current_school_id()):
        raise PermissionError('Student profile not found for this account.')
    return student


def student_summary(student):
    school_id = current_school_id()
    return {
        'student': student,
        'overview': student_overview(school_id, student['id']),
        'announcements': announcements_for(school_id, session.get('role'), [student['class_id']] if student['class_id'] else []),
        'upcoming_events': upcoming_events(school_id, limit=5),
    }


@app.route('/student/dashboard')
@role_required('student')
def student_dashboard():
    return jsonify(student_summary(current_student()))


@app.route('/student/report-cards')
@role_required('student')
def student_report_cards():
    return jsonify(published_cards_for_student(current_school_id(), current_student()['id']))


@app.route('/student/report-cards/<int:report_id>/pdf')
@role_required('student')
def student_report_card_pdf(report_id):
    student = current_student()
    card = get_report_card(current_school_id(), report_id)
    if not card or card['student_id'] != student['id'] or card['status'] != 'published':
        raise LookupError('Report card not found.')
    return pdf_download(*report_card_pdf(current_school_id(), report_id))


@app.route('/student/attendance')
@role_required('student')
def student_attendance():
    student = current_student()
    return jsonify({
        'history': student_attendance_history(current_school_id(), student['id']),
        'rate': student_attendance_rate(current_school_id(), student['id']),
    })


@app.route('/student/performance')
@role_required('student')
def student_performance():
    return jsonify(student_performance_trends(current_school_id(), current_student()['id']))


@app.route('/student/fees')
@role_required('student')
def student_fees():
    return jsonify(student_fee_statement(current_school_id(), current_student()['id'], request.args.get('term_id', type=int)))


@app.route('/parent/dashboard')
@role_required('parent')
def parent_dashboard():
    school_id = current_school_id()
    children = students_for_parent(session.get('user_id'))
    return jsonify({
        'children': [dict(child, overview=student_overview(school_id, child['id'])) for child in children],
        'announcements': announcements_for(school_id, 'parent', [child['class_id'] for child in children if child['class_id']]),
        'upcoming_events': upcoming_events(school_id, limit=5),
        'unread_messages': unread_count(school_id, session.get('user_id')),
    })


@app.route('/parent/children/<int:student_id>/report-cards')
@role_required('parent')
def parent_report_cards(student_id):
    return jsonify(published_cards_for_student(current_school_id(), parent_child(student_id)))


@app.route('/parent/report-cards/<int:report_id>/pdf')
@role_required('parent')
def parent_report_card_pdf(report_id):
    card = get_report_card(current_school_id(), report_id)
    if not card or card['status'] != 'published':
        raise LookupError('Report card not found.')
    parent_child(card['student_id'])
    return pdf_download(*report_card_pdf(current_school_id(), report_id))


@app.route('/parent/children/<int:student_id>/attendance')
@role_required('parent')
def parent_attendance(student_id):
    student_id = parent_child(student_id)
    return jsonify({
        'history': student_attendance_history(current_school_id(), student_id),
        'rate': student_attendance_rate(current_school_id(), student_id),
    })


@app.route('/parent/children/<int:student_id>/fees')
@role_required('parent')
def parent_fees(student_id):
    return jsonify(student_fee_statement(current_school_id(), parent_child(student_id), request.args.get('term_id', type=int)))


@app.route('/parent/payments/<int:payment_id>/receipt')
@role_required('parent')
def parent_payment_receipt(payment_id):
    payment = get_payment(current_school_id(), payment_id)
    if not payment:
        raise LookupError('Payment not found.')
    parent_child(payment['student_id'])
    return pdf_download(*fee_receipt_pdf(current_school_id(), payment_id))


# ==================== SHARED API ====================

MEMBER_ROLES = ('school_admin', 'teacher', 'student', 'parent')


@app.route('/api/events')
@role_required(*MEMBER_ROLES)
def api_events():
    school_id = current_school_id()
    if request.args.get('start_date') and request.args.get('end_date'):
        return jsonify(events_in_range(school_id, request.args['start_date'], request.args['end_date']))
    return jsonify(upcoming_events(school_id, request.args.get('limit', 10, type=int)))


@app.route('/api/events/notifications')
@role_required(*MEMBER_ROLES)
def api_event_notifications():
    return jsonify(event_notifications(session.get('user_id'), bool(request.args.get('unread'))))


@app.route('/api/events/<int:event_id>')
@role_required(*MEMBER_ROLES)
def api_event(event_id):
    return jsonify(require_event(current_school_id(), event_id))


@app.route('/api/events/<int:event_id>/rsvp', methods=['POST'])
@role_required(*MEMBER_ROLES)
def api_event_rsvp(event_id):
    data = request_data()
    rsvp_id = respond_to_event(current_school_id(), event_id, current_user(), data.get('status'),
                               data.get('guests', 0), data.get('notes', ''))
    return jsonify({'rsvp_id': rsvp_id})


@app.route('/api/announcements')
@role_required(*MEMBER_ROLES)
def api_announcements():
    school_id = current_school_id()
    role = session.get('role')
    class_ids = []
    if role == 'teacher':
        class_ids = [cl['id'] for cl in teacher_classes(school_id, current_teacher()['id'])]
    elif role == 'student':
        class_ids = [current_student()['class_id']]
    elif role == 'parent':
        class_ids = [child['class_id'] for child in students_for_parent(session.get('user_id'))]
    return jsonify(announcements_for(school_id, role, [cid for cid in class_ids if cid]))


@app.route('/api/conversations', methods=['GET', 'POST'])
@role_required('teacher', 'parent')
def api_conversations():
    school_id = current_school_id()
    user_id = session.get('user_id')
    if request.method == 'GET':
        return jsonify(list_conversations(school_id, user_id, bool(request.args.get('archived'))))
    data = request_data()
    if session.get('role') == 'teacher':
        teacher_user_id, parent_user_id = user_id, data.get('parent_user_id')
    else:
        teacher_user_id, parent_user_id = data.get('teacher_user_id'), user_id
    conversation_id, message_id = start_conversation(school_id, teacher_user_id, parent_user_id, data.get('body'),
                                                     data.get('subject', ''), data.get('student_id'), sender_id=user_id)
    return jsonify({'conversation_id': conversation_id, 'message_id': message_id}), 201


@app.route('/api/conversations/unread')
@role_required('teacher', 'parent')
def api_unread_count():
    return jsonify({'unread': unread_count(current_school_id(), session.get('user_id'))})


@app.route('/api/conversations/<int:conversation_id>/messages', methods=['GET', 'POST'])
@role_required('teacher', 'parent')
def api_messages(conversation_id):
    school_id = current_school_id()
    user_id = session.get('user_id')
    if request.method == 'GET':
        return jsonify(list_messages(school_id, conversation_id, user_id))
    message_id = send_message(school_id, conversation_id, user_id, request_data().get('body'))
    return jsonify({'message_id': message_id}), 201


@app.route('/api/conversations/<int:conversation_id>/read', methods=['POST'])
@role_required('teacher', 'parent')
def api_read_messages(conversation_id):
    mark_messages_read(current_school_id(), conversation_id, session.get('user_id'))
    return jsonify({'ok': True})


@app.route('/api/conversations/<int:conversation_id>/archive', methods=['POST'])
@role_required('teacher', 'parent')
def api_archive_conversation(conversation_id):
    archive_conversation(current_school_id(), conversation_id, session.get('user_id'))
    return jsonify({'ok': True})


SUPPORT_ROLES = ('super_admin', 'school_admin', 'teacher')


@app.route('/api/support', methods=['GET', 'POST'])
@role_required(*SUPPORT_ROLES)
def api_support_tickets():
    user = current_user()
    if request.method == 'GET':
        if user['role'] == 'super_admin':
            return jsonify(list_tickets(status=request.args.get('status') or None))
        return jsonify(list_tickets(requester_id=user['id'], status=request.args.get('status') or None))
    data = request_data()
    ticket = create_ticket(user, data.get('subject'), data.get('description'), data.get('category'),
                           data.get('priority') or 'medium', current_school_id(), data.get('attachments'))
    return jsonify(ticket), 201


@app.route('/api/support/<int:ticket_id>')
@role_required(*SUPPORT_ROLES)
def api_support_ticket(ticket_id):
    return jsonify(get_ticket(ticket_id, current_user()))


@app.route('/api/support/<int:ticket_id>/messages', methods=['POST'])
@role_required(*SUPPORT_ROLES)
def api_support_message(ticket_id):
    data = request_data()
    message_id = add_message(ticket_id, current_user(), data.get('body'), bool(data.get('is_internal')),
                             data.get('attachments'))
    return jsonify({'message_id': message_id}), 201


@app.route('/api/support/<int:ticket_id>/<action>', methods=['POST'])
@role_required(*SUPPORT_ROLES)
def api_support_action(ticket_id, action):
    actions = {'close': close_ticket, 'reopen': reopen_ticket}
    if action not in actions:
        raise LookupError('Unknown ticket action.')
    actions[action](ticket_id, current_user())
    return jsonify({'ok': True})


if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG', '').strip().lower() in ('1', 'true', 'yes'))
