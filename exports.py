"""CSV downloads and PDF documents (report cards, fee receipts)."""

import csv
import io
import logging
from datetime import date

from flask import render_template
from xhtml2pdf import pisa

from attendance import attendance_records, get_attendance
from exams import list_marks, require_exam
from fees import get_payment, list_payments
from grading import ordinal
from people import list_students
from report_cards import get_report_card, list_report_cards
from tenancy import get_school


def rows_to_csv(headers, rows):
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(['' if value is None else value for value in row])
    return output.getvalue()


def students_csv(school_id, class_id=None, status=None):
    students = list_students(school_id, class_id=class_id, status=status)
    headers = ['Admission Number', 'First Name', 'Last Name', 'Gender', 'Date of Birth', 'Class', 'Guardian Name',
               'Guardian Phone', 'Status']
    rows = [
        [s['admission_number'], s['first_name'], s['last_name'], s.get('gender'), s.get('date_of_birth'),
         s.get('class_name'), s.get('guardian_name'), s.get('guardian_phone'), s['status']]
        for s in students
    ]
    return f'students_{date.today():%Y%m%d}.csv', rows_to_csv(headers, rows)


def attendance_csv(school_id, attendance_id):
    session = get_attendance(school_id, attendance_id)
    records = attendance_records(school_id, attendance_id)
    headers = ['Admission Number', 'First Name', 'Last Name', 'Status', 'Remarks']
    rows = [[r['admission_number'], r['first_name'], r['last_name'], r['status'], r.get('remarks')] for r in records]
    filename = f"attendance_{session['attendance_code']}_{session['date']}_{session['session']}.csv"
    return filename, rows_to_csv(headers, rows)


def exam_marks_csv(school_id, exam_id, class_id=None):
    exam = require_exam(school_id, exam_id)
    marks = list_marks(school_id, exam_id, class_id=class_id)
    headers = ['Admission Number', 'First Name', 'Last Name', 'Subject', 'Class Score', 'Exam Score', 'Total',
               'Max Marks', 'Percentage', 'Grade', 'Remarks', 'Status']
    rows = [
        [m['admission_number'], m['first_name'], m['last_name'], m['subject_name'], m['class_score'], m['exam_score'],
         m['total_marks'], m['max_marks'], m['percentage'], m['grade'], m['remarks'], m['submission_status']]
        for m in marks
    ]
    return f"marks_{exam['exam_code']}.csv", rows_to_csv(headers, rows)


def payments_csv(school_id, student_id=None, class_id=None, status=None):
    payments = list_payments(school_id, student_id=student_id, class_id=class_id, status=status)
    headers = ['Receipt Number', 'Payment Date', 'Admission Number', 'Student', 'Class', 'Category', 'Amount Due',
               'Amount Paid', 'Balance', 'Method', 'Status']
    rows = [
        [p['receipt_number'], p['payment_date'], p['admission_number'], f"{p['first_name']} {p['last_name']}",
         p.get('class_name'), p.get('category_name'), p['amount_due'], p['amount_paid'], p['remaining_balance'],
         p['payment_method'], p['status']]
        for p in payments
    ]
    return f'fee_payments_{date.today():%Y%m%d}.csv', rows_to_csv(headers, rows)


def report_cards_csv(school_id, class_id, term_id=None):
    cards = list_report_cards(school_id, class_id=class_id, term_id=term_id)
    headers = ['Report Code', 'Admission Number', 'First Name', 'Last Name', 'Class', 'Term', 'Total Score',
               'Raw Score', 'Percentage', 'Grade', 'Position', 'Class Size', 'Status']
    rows = [
        [r['report_code'], r['admission_number'], r['first_name'], r['last_name'], r.get('class_name'), r.get('term_name'),
         r['total_score'], r['raw_score'], r['percentage'], r['overall_grade'], r['position'], r['total_students'],
         r['status']]
        for r in cards
    ]
    return f'report_cards_class_{class_id}.csv', rows_to_csv(headers, rows)


def render_pdf(template_name, **context):
    """Render a Jinja template and convert it to PDF bytes."""
    html = render_template(template_name, **context)
    pdf_file = io.BytesIO()
    pisa_status = pisa.CreatePDF(io.BytesIO(html.encode('UTF-8')), dest=pdf_file)
    if pisa_status.err:
        logging.error("PDF generation failed for %s (%s errors)", template_name, pisa_status.err)
        raise RuntimeError('Error generating PDF.')
    return pdf_file.getvalue()


def report_card_pdf(school_id, report_id):
    card = get_report_card(school_id, report_id)
    if not card:
        raise LookupError('Report card not found.')
    school = get_school(school_id) or {}
    pdf = render_pdf('pdf/report_card.html', card=card, school=school, ordinal=ordinal)
    return f"report_card_{card['report_code']}.pdf", pdf


def fee_receipt_pdf(school_id, payment_id):
    payment = get_payment(school_id, payment_id)
    if not payment:
        raise LookupError('Payment not found.')
    school = get_school(school_id) or {}
    pdf = render_pdf('pdf/fee_receipt.html', payment=payment, school=school)
    return f"receipt_{payment['receipt_number']}.pdf", pdf
