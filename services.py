import io
import logging
import math
import re
import time
from collections import Counter, namedtuple
from datetime import date, timedelta

import pandas as pd
from dateutil.relativedelta import relativedelta
from flask import current_app
from sqlalchemy import or_, func, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from errors import (DuplicateEmailError, EmptyUpdateError, InvalidIdError, InvalidStatusError,
                    InvalidTransitionError, NotFoundError, ValidationError, store_error)
from models import db, Student, StudentProgram, PAYMENT_STATUSES, CLASS_TIMINGS, PROGRAMS, utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
PHONE_RE = re.compile(r'^\+?[0-9\s\-()]+$')
STUDENT_ID_RE = re.compile(r'^[0-9a-f]{32}$')

ONE_MONTH = relativedelta(months=1)

# Status moves accepted by update_payment, keyed by the current status.
ALLOWED_TRANSITIONS = {
    'pending_payment': {'pending_payment', 'pending_verification', 'approved', 'rejected'},
    'pending_verification': {'pending_verification', 'approved', 'rejected'},
    'approved': {'approved'},
    'rejected': {'rejected'},
}

PaymentUpdate = namedtuple('PaymentUpdate', ['student', 'applied', 'message'])


def _retry_settings():
    config = current_app.config
    return max(1, int(config.get('STORE_RETRIES', 3))), float(config.get('STORE_RETRY_DELAY', 0.1))


def _text(data, key):
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ''


# Registration

def validate_registration(data):
    """Check a registration payload and return the normalized column values.

    Every problem is collected so the form can flag all offending fields at
    once; a ValidationError carries them as ``{field: message}``.
    """
    if not isinstance(data, dict):
        raise ValidationError('Registration details must be a JSON object')

    errors = {}

    full_name = _text(data, 'fullName')
    if len(full_name) < 3:
        errors['fullName'] = 'Full name must be at least 3 characters'

    email = _text(data, 'email').lower()
    if not EMAIL_RE.match(email):
        errors['email'] = 'Invalid email address'

    phone = _text(data, 'phone')
    if not PHONE_RE.match(phone):
        errors['phone'] = 'Invalid phone number format'
    elif sum(c.isdigit() for c in phone) < 10:
        errors['phone'] = 'Phone number must be at least 10 digits'

    address = _text(data, 'address')
    if len(address) < 5:
        errors['address'] = 'Address must be at least 5 characters'

    date_of_birth = None
    try:
        date_of_birth = date.fromisoformat(data.get('dateOfBirth'))
    except (TypeError, ValueError):
        errors['dateOfBirth'] = 'Date of birth must be a date in YYYY-MM-DD form'
    else:
        if date_of_birth >= date.today():
            errors['dateOfBirth'] = 'Date of birth must be in the past'

    programs = data.get('selectedPrograms')
    if not isinstance(programs, (list, tuple)) or not programs:
        errors['selectedPrograms'] = 'Please select at least one program'
        programs = []
    else:
        unknown = [p for p in programs if p not in PROGRAMS]
        if unknown:
            errors['selectedPrograms'] = f"Unknown program(s): {', '.join(map(str, unknown))}"

    class_timing = data.get('classTiming')
    if class_timing not in CLASS_TIMINGS:
        errors['classTiming'] = 'Please select a class timing (morning or afternoon)'

    if errors:
        raise ValidationError('Invalid registration details', details=errors)

    return {
        'full_name': full_name,
        'email': email,
        'phone': phone,
        'address': address,
        'date_of_birth': date_of_birth,
        'class_timing': class_timing,
        'programs': sorted(set(programs)),
    }


def register(data):
    """Create a new student in the pending_payment state."""
    fields = validate_registration(data)
    programs = fields.pop('programs')

    try:
        if Student.query.filter_by(email=fields['email']).first() is not None:
            logger.warning('Registration rejected, email already registered: %s', fields['email'])
            raise DuplicateEmailError('Email already registered', details={'email': fields['email']})

        student = Student(
            payment_status='pending_payment',
            amount_paid=0,
            sender_name=None,
            last_payment_date=None,
            next_payment_due_date=None,
            registration_date=utcnow(),
            **fields
        )
        student.programs = [StudentProgram(code=code) for code in programs]
        db.session.add(student)
        db.session.commit()
    except IntegrityError as exc:
        # Lost a race against a concurrent registration with the same email.
        db.session.rollback()
        logger.warning('Registration hit the email unique constraint: %s', fields['email'])
        raise DuplicateEmailError('Email already registered', details={'email': fields['email']}) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error('Failed to register student %s', fields['email'], exc_info=True)
        raise store_error(exc, 'Failed to register student') from exc

    logger.info('Registered student %s (%s)', student.id, student.email)
    return student


# Payment lifecycle

def check_student_id(student_id):
    if not isinstance(student_id, str) or not STUDENT_ID_RE.match(student_id):
        raise InvalidIdError('Invalid student ID format', details={'id': student_id})
    return student_id


def _parse_amount(value):
    if isinstance(value, bool):
        raise ValidationError('Invalid amount', details={'amountPaid': 'Amount must be a number'})
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError('Invalid amount', details={'amountPaid': 'Amount must be a number'})
    if not math.isfinite(amount) or amount < 0:
        raise ValidationError('Invalid amount', details={'amountPaid': 'Amount must be zero or more'})
    return amount


def parse_payment_patch(patch):
    """Turn a PATCH body into ``(column_changes, is_renewal)``."""
    if not isinstance(patch, dict):
        raise EmptyUpdateError('Update body must be a JSON object')

    changes = {}
    if 'paymentStatus' in patch:
        status = patch['paymentStatus']
        if status not in PAYMENT_STATUSES:
            raise InvalidStatusError(f'Invalid payment status: {status!r}',
                                     details={'allowed': list(PAYMENT_STATUSES)})
        changes['payment_status'] = status

    # amountDue is the name older clients still send.
    for key in ('amountPaid', 'amountDue'):
        if key in patch:
            changes['amount_paid'] = _parse_amount(patch[key])
            break

    if 'senderName' in patch:
        sender = patch['senderName']
        if sender is not None and not isinstance(sender, str):
            raise ValidationError('Invalid sender name', details={'senderName': 'Sender name must be text'})
        changes['sender_name'] = (sender or '').strip() or None

    renewal = patch.get('isMonthlyRenewal', False)
    if not isinstance(renewal, bool):
        raise ValidationError('Invalid renewal flag', details={'isMonthlyRenewal': 'Must be true or false'})

    if not changes and not renewal:
        raise EmptyUpdateError('No recognized fields to update',
                               details={'recognized': ['paymentStatus', 'senderName', 'amountPaid',
                                                       'isMonthlyRenewal']})
    return changes, renewal


def plan_payment_update(student, changes, renewal, now, replay_window=timedelta(0)):
    """Decide what a payment patch does to ``student``.

    Returns ``(values, message)`` where ``values`` are the columns to write,
    or ``None`` when the record is already in the requested state.
    """
    status = student.payment_status
    values = dict(changes)
    target = values.get('payment_status', status)

    if renewal and status != 'approved' and target == 'approved':
        # nothing to renew yet; treat it as the first approval
        renewal = False

    if renewal:
        if status != 'approved':
            raise InvalidTransitionError(
                f'Monthly renewal requires an approved payment (current status: {status})',
                details={'id': student.id, 'paymentStatus': status})
        if target != 'approved':
            raise InvalidTransitionError('A monthly renewal keeps the payment approved',
                                         details={'id': student.id, 'paymentStatus': target})
        if student.last_renewal_at is not None and now - student.last_renewal_at < replay_window:
            return None, 'Monthly renewal already recorded'
        base = student.next_payment_due_date
        if base is None or base < now:
            base = now
        values.update(payment_status='approved', last_payment_date=now,
                      next_payment_due_date=base + ONE_MONTH, last_renewal_at=now)
        return values, 'Monthly renewal recorded'

    if target not in ALLOWED_TRANSITIONS[status]:
        raise InvalidTransitionError(f'Cannot change payment status from {status} to {target}',
                                     details={'id': student.id, 'from': status, 'to': target})

    if target == 'pending_verification':
        amount = values.get('amount_paid', student.amount_paid)
        sender = values.get('sender_name', student.sender_name)
        problems = {}
        if not amount or amount <= 0:
            problems['amountPaid'] = 'A payment amount greater than zero is required'
        if not sender:
            problems['senderName'] = 'The name of the payment sender is required'
        if problems:
            raise ValidationError('Incomplete payment details', details=problems)

    if target == 'approved' and status != 'approved':
        values.update(last_payment_date=now, next_payment_due_date=now + ONE_MONTH)
        return values, 'Payment approved'

    if all(getattr(student, column) == value for column, value in values.items()):
        return None, f'Payment status was already {status}. No changes made.'
    return values, 'Payment details updated'


def compare_and_set(student, values):
    """Write ``values`` only if the row still matches the state ``student`` was read in.

    The status and both dates the plan was derived from are part of the
    WHERE clause, so the decision and the write form one atomic statement.
    """
    conditions = [Student.id == student.id, Student.payment_status == student.payment_status]
    for column in (Student.next_payment_due_date, Student.last_renewal_at):
        current = getattr(student, column.key)
        conditions.append(column.is_(None) if current is None else column == current)

    result = db.session.execute(
        update(Student).where(*conditions).values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def update_payment(student_id, patch):
    """Apply a payment patch to one student and return the post-update record.

    Retries are bounded by STORE_RETRIES: a missing row may be replication
    lag, a row that changed under us gets its plan recomputed, and transient
    OperationalErrors are tried again. Anything persistent is raised.
    """
    check_student_id(student_id)
    changes, renewal = parse_payment_patch(patch)
    attempts, delay = _retry_settings()
    replay_window = timedelta(seconds=current_app.config.get('RENEWAL_REPLAY_WINDOW', 60))

    found = False
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            time.sleep(delay)
        try:
            student = db.session.get(Student, student_id, populate_existing=True)
            if student is None:
                found = False
                logger.warning('Student %s not found for payment update (attempt %d/%d)',
                               student_id, attempt, attempts)
                continue
            found = True

            values, message = plan_payment_update(student, changes, renewal, utcnow(), replay_window)
            if values is None:
                db.session.rollback()
                logger.info('Payment update for %s was a no-op: %s', student_id, message)
                return PaymentUpdate(student, False, message)

            if compare_and_set(student, values):
                db.session.commit()
                updated = db.session.get(Student, student_id, populate_existing=True)
                logger.info('Payment update for %s: %s (status %s)', student_id, message,
                            updated.payment_status)
                return PaymentUpdate(updated, True, message)

            db.session.rollback()
            logger.warning('Student %s changed during payment update (attempt %d/%d)',
                           student_id, attempt, attempts)
        except OperationalError as exc:
            db.session.rollback()
            if attempt == attempts:
                logger.error('Payment update for %s failed', student_id, exc_info=True)
                raise store_error(exc, 'Failed to update payment status') from exc
            logger.warning('Transient store error updating %s (attempt %d/%d): %s',
                           student_id, attempt, attempts, exc.__class__.__name__)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error('Payment update for %s failed', student_id, exc_info=True)
            raise store_error(exc, 'Failed to update payment status') from exc

    if not found:
        raise NotFoundError('Student not found', details={'id': student_id})
    raise InvalidTransitionError('Student record changed while updating; retry the request',
                                 details={'id': student_id})


# Listing & aggregates

# (column, compare case-insensitively)
SORT_COLUMNS = {
    'fullName': (Student.full_name, True),
    'email': (Student.email, True),
    'phone': (Student.phone, True),
    'address': (Student.address, True),
    'classTiming': (Student.class_timing, True),
    'paymentStatus': (Student.payment_status, True),
    'senderName': (Student.sender_name, True),
    'registrationDate': (Student.registration_date, False),
    'dateOfBirth': (Student.date_of_birth, False),
    'lastPaymentDate': (Student.last_payment_date, False),
    'nextPaymentDueDate': (Student.next_payment_due_date, False),
    'amountPaid': (Student.amount_paid, False),
}

AMOUNT_RANGES = {
    'less_than_4000': Student.amount_paid < 4000,
    '4000_to_7999': Student.amount_paid.between(4000, 7999),
    'equal_to_8000': Student.amount_paid == 8000,
}


def _choice(filters, key, allowed):
    value = (filters.get(key) or '').strip()
    if not value or value == 'all':
        return None
    if value not in allowed:
        raise ValidationError(f'Unknown {key} filter: {value}', details={key: sorted(allowed)})
    return value


def list_students(filters=None, sort_key='registrationDate', descending=True):
    """Read-only listing for the dashboard. Filters combine with AND."""
    filters = filters or {}
    query = Student.query

    class_timing = _choice(filters, 'classTiming', CLASS_TIMINGS)
    if class_timing:
        query = query.filter(Student.class_timing == class_timing)

    program = _choice(filters, 'program', PROGRAMS)
    if program:
        query = query.filter(Student.programs.any(StudentProgram.code == program))

    amount_range = _choice(filters, 'amountRange', AMOUNT_RANGES)
    if amount_range:
        query = query.filter(AMOUNT_RANGES[amount_range])

    status = _choice(filters, 'paymentStatus', PAYMENT_STATUSES)
    if status:
        query = query.filter(Student.payment_status == status)

    search = (filters.get('search') or '').strip()
    if search:
        query = query.filter(or_(
            Student.full_name.icontains(search, autoescape=True),
            Student.email.icontains(search, autoescape=True),
            Student.phone.contains(search, autoescape=True),
        ))

    if sort_key not in SORT_COLUMNS:
        raise ValidationError(f'Cannot sort by {sort_key}', details={'sort': sorted(SORT_COLUMNS)})
    column, fold_case = SORT_COLUMNS[sort_key]
    order = func.lower(column) if fold_case else column
    if descending:
        query = query.order_by(order.desc(), Student.id.desc())
    else:
        query = query.order_by(order.asc(), Student.id.asc())

    attempts, delay = _retry_settings()
    for attempt in range(1, attempts + 1):
        try:
            return query.all()
        except OperationalError as exc:
            db.session.rollback()
            if attempt == attempts:
                logger.error('Failed to list students', exc_info=True)
                raise store_error(exc, 'Failed to fetch students') from exc
            logger.warning('Transient store error listing students (attempt %d/%d)', attempt, attempts)
            time.sleep(delay)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error('Failed to list students', exc_info=True)
            raise store_error(exc, 'Failed to fetch students') from exc


def get_student(student_id):
    check_student_id(student_id)
    try:
        student = db.session.get(Student, student_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error('Failed to load student %s', student_id, exc_info=True)
        raise store_error(exc, 'Failed to fetch student') from exc
    if student is None:
        raise NotFoundError('Student not found', details={'id': student_id})
    return student


def summarize(students):
    """Dashboard figures for a listing.

    total_revenue only adds up the latest amount recorded on each approved
    student; renewals overwrite amountPaid, so this is not a payment ledger.
    """
    total = len(students)
    program_counts = Counter(code for s in students for code in s.selected_programs)
    status_counts = Counter(s.payment_status for s in students)
    timing_counts = Counter(s.class_timing for s in students)

    return {
        'total_students': total,
        'programs': {
            code: {
                'label': label,
                'count': program_counts.get(code, 0),
                'percentage': round(program_counts.get(code, 0) * 100.0 / total, 1) if total else 0.0,
            }
            for code, label in PROGRAMS.items()
        },
        'payment_status': {status: status_counts.get(status, 0) for status in PAYMENT_STATUSES},
        'class_timing': {timing: timing_counts.get(timing, 0) for timing in CLASS_TIMINGS},
        'total_revenue': sum(s.amount_paid or 0 for s in students if s.payment_status == 'approved'),
        'revenue_basis': 'latest recorded amount per approved student',
    }


# Report export

REPORT_COLUMNS = ['Full Name', 'Email', 'Phone', 'Date of Birth', 'Program(s)',
                  'Class Timing', 'Amount Paid (₦)', 'Payment Status', 'Date Joined']

REPORT_FORMATS = ('csv', 'xlsx')


def _status_label(status):
    return status.replace('_', ' ').title()


def build_report(students, fmt='csv'):
    """Render a listing as a CSV or XLSX file held in memory."""
    if fmt not in REPORT_FORMATS:
        raise ValidationError(f'Unsupported report format: {fmt}', details={'format': list(REPORT_FORMATS)})
    if not students:
        raise ValidationError('No data to download with current filters')

    data = []
    for student in students:
        data.append({
            'Full Name': student.full_name,
            'Email': student.email,
            'Phone': student.phone,
            'Date of Birth': student.date_of_birth.strftime('%Y-%m-%d') if student.date_of_birth else 'N/A',
            'Program(s)': '; '.join(PROGRAMS.get(code, code) for code in student.selected_programs),
            'Class Timing': student.class_timing.capitalize(),
            'Amount Paid (₦)': student.amount_paid,
            'Payment Status': _status_label(student.payment_status),
            'Date Joined': student.registration_date.strftime('%Y-%m-%d %H:%M'),
        })
    df = pd.DataFrame(data, columns=REPORT_COLUMNS)

    output = io.BytesIO()
    if fmt == 'xlsx':
        with pd.ExcelWriter(output, engine='xlsxwriter') as writer:
            df.to_excel(writer, index=False, sheet_name='Student Registrations')
    else:
        output.write(df.to_csv(index=False).encode('utf-8'))
    output.seek(0)
    return output
