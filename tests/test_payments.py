from datetime import timedelta

import pytest
from dateutil.relativedelta import relativedelta
from sqlalchemy import update

import services
from errors import (EmptyUpdateError, InvalidIdError, InvalidStatusError, InvalidTransitionError,
                    NotFoundError, ValidationError)
from models import db, Student, utcnow

TOLERANCE = timedelta(seconds=5)


def close_to(actual, expected):
    return actual is not None and abs(actual - expected) <= TOLERANCE


@pytest.fixture
def student(app, make_registration):
    return services.register(make_registration())


def submit_proof(student_id, amount=8000, sender='Jane Doe'):
    return services.update_payment(student_id, {
        'paymentStatus': 'pending_verification', 'amountPaid': amount, 'senderName': sender,
    })


def approve(student_id):
    return services.update_payment(student_id, {'paymentStatus': 'approved'})


def set_columns(student_id, **values):
    db.session.execute(update(Student).where(Student.id == student_id).values(**values))
    db.session.commit()


def test_submitting_proof_moves_to_pending_verification(student):
    result = submit_proof(student.id, amount=7500, sender='  Mrs Doe ')

    assert result.applied
    assert result.student.payment_status == 'pending_verification'
    assert result.student.amount_paid == 7500
    assert result.student.sender_name == 'Mrs Doe'
    assert result.student.last_payment_date is None


def test_proof_needs_amount_and_sender(student):
    with pytest.raises(ValidationError) as excinfo:
        services.update_payment(student.id, {'paymentStatus': 'pending_verification', 'amountPaid': 0})
    assert set(excinfo.value.details) == {'amountPaid', 'senderName'}


def test_approval_sets_payment_dates(student):
    submit_proof(student.id)
    now = utcnow()

    result = approve(student.id)

    assert result.applied
    assert result.student.payment_status == 'approved'
    assert close_to(result.student.last_payment_date, now)
    assert result.student.next_payment_due_date == result.student.last_payment_date + relativedelta(months=1)
    assert result.student.amount_paid == 8000


def test_admin_can_add_details_and_approve_directly(student):
    result = services.update_payment(student.id, {
        'paymentStatus': 'approved', 'amountPaid': 4000, 'senderName': 'Cash at desk',
    })

    assert result.student.payment_status == 'approved'
    assert result.student.amount_paid == 4000
    assert result.student.sender_name == 'Cash at desk'
    assert result.student.next_payment_due_date is not None


def test_reapproving_does_not_reset_dates(student):
    first = approve(student.id).student
    due = first.next_payment_due_date

    again = approve(student.id)

    assert not again.applied
    assert again.student.next_payment_due_date == due


def test_rejection_sets_only_status(student):
    submit_proof(student.id)

    result = services.update_payment(student.id, {'paymentStatus': 'rejected'})

    assert result.student.payment_status == 'rejected'
    assert result.student.amount_paid == 8000
    assert result.student.next_payment_due_date is None


def test_rejected_is_terminal(student):
    services.update_payment(student.id, {'paymentStatus': 'rejected'})

    with pytest.raises(InvalidTransitionError):
        submit_proof(student.id)
    with pytest.raises(InvalidTransitionError):
        approve(student.id)


def test_renewal_advances_from_future_due_date(student):
    approve(student.id)
    future_due = utcnow() + timedelta(days=10)
    set_columns(student.id, next_payment_due_date=future_due)
    now = utcnow()

    result = services.update_payment(student.id, {'isMonthlyRenewal': True})

    assert result.applied
    assert result.student.payment_status == 'approved'
    assert close_to(result.student.last_payment_date, now)
    assert result.student.next_payment_due_date == future_due + relativedelta(months=1)


def test_renewal_after_lapse_counts_from_now(student):
    approve(student.id)
    set_columns(student.id, next_payment_due_date=utcnow() - timedelta(days=20))
    now = utcnow()

    result = services.update_payment(student.id, {'isMonthlyRenewal': True, 'amountPaid': 6000})

    assert close_to(result.student.next_payment_due_date, now + relativedelta(months=1))
    assert result.student.amount_paid == 6000


def test_renewal_leaves_amount_alone_when_not_supplied(student):
    submit_proof(student.id, amount=8000)
    approve(student.id)

    result = services.update_payment(student.id, {'isMonthlyRenewal': True})

    assert result.student.amount_paid == 8000


def test_replayed_renewal_does_not_double_advance(student):
    approve(student.id)
    first = services.update_payment(student.id, {'isMonthlyRenewal': True})

    second = services.update_payment(student.id, {'isMonthlyRenewal': True})

    assert first.applied
    assert not second.applied
    assert second.student.next_payment_due_date == first.student.next_payment_due_date


def test_renewals_outside_replay_window_both_apply(app, student):
    app.config['RENEWAL_REPLAY_WINDOW'] = 0
    approve(student.id)
    first = services.update_payment(student.id, {'isMonthlyRenewal': True}).student.next_payment_due_date

    second = services.update_payment(student.id, {'isMonthlyRenewal': True}).student.next_payment_due_date

    assert second == first + relativedelta(months=1)


def test_renewal_requires_approved_status(student):
    with pytest.raises(InvalidTransitionError):
        services.update_payment(student.id, {'isMonthlyRenewal': True})


def test_renewal_flag_on_first_approval_approves(student):
    result = services.update_payment(student.id, {'paymentStatus': 'approved', 'isMonthlyRenewal': True})

    assert result.student.payment_status == 'approved'
    assert result.student.next_payment_due_date == result.student.last_payment_date + relativedelta(months=1)


def test_identical_proof_submission_is_idempotent(student):
    submit_proof(student.id)

    again = submit_proof(student.id)

    assert not again.applied
    assert again.student.payment_status == 'pending_verification'
    assert again.student.amount_paid == 8000


def test_legacy_amount_due_field(student):
    result = services.update_payment(student.id, {
        'paymentStatus': 'pending_verification', 'amountDue': '4500', 'senderName': 'Jane',
    })
    assert result.student.amount_paid == 4500


@pytest.mark.parametrize('patch, error', [
    ({}, EmptyUpdateError),
    ({'isMonthlyRenewal': False}, EmptyUpdateError),
    ({'comment': 'hello'}, EmptyUpdateError),
    ({'paymentStatus': 'paid'}, InvalidStatusError),
    ({'paymentStatus': None}, InvalidStatusError),
    ({'amountPaid': -1}, ValidationError),
    ({'amountPaid': 'lots'}, ValidationError),
    ({'senderName': 42}, ValidationError),
    ({'isMonthlyRenewal': 'yes'}, ValidationError),
])
def test_malformed_patches(student, patch, error):
    with pytest.raises(error):
        services.update_payment(student.id, patch)


def test_invalid_id_format(app):
    with pytest.raises(InvalidIdError):
        approve('not-a-valid-id')


def test_missing_student_retries_then_fails(app, monkeypatch):
    sleeps = []
    monkeypatch.setattr(services.time, 'sleep', sleeps.append)
    missing_id = 'a' * 32

    with pytest.raises(NotFoundError) as excinfo:
        approve(missing_id)

    assert excinfo.value.details == {'id': missing_id}
    assert len(sleeps) == 2
    assert Student.query.count() == 0


def test_compare_and_set_refuses_stale_state(student):
    approve(student.id)
    stale = db.session.get(Student, student.id, populate_existing=True)
    stale_due = stale.next_payment_due_date
    db.session.expunge(stale)
    set_columns(student.id, next_payment_due_date=stale_due + timedelta(days=3))

    assert not services.compare_and_set(stale, {'next_payment_due_date': stale_due + relativedelta(months=1)})

    fresh = db.session.get(Student, student.id, populate_existing=True)
    assert fresh.next_payment_due_date == stale_due + timedelta(days=3)


def test_end_to_end_payment_lifecycle(app, make_registration):
    student = services.register(make_registration(
        fullName='Jane Doe', email='jane@x.com', selectedPrograms=['jamb'], classTiming='morning'))
    assert student.payment_status == 'pending_payment'
    assert student.amount_paid == 0

    pending = submit_proof(student.id, amount=8000, sender='Jane Doe').student
    assert pending.payment_status == 'pending_verification'
    assert pending.amount_paid == 8000

    approved = approve(student.id).student
    assert approved.payment_status == 'approved'
    assert close_to(approved.next_payment_due_date, utcnow() + relativedelta(months=1))
    prior_due = approved.next_payment_due_date

    renewed = services.update_payment(student.id, {'isMonthlyRenewal': True}).student
    assert renewed.payment_status == 'approved'
    assert renewed.next_payment_due_date == prior_due + relativedelta(months=1)


def test_resubmitted_proof_cannot_blank_amount_or_sender(student):
    submit_proof(student.id, amount=8000, sender='Jane Doe')

    with pytest.raises(ValidationError) as excinfo:
        submit_proof(student.id, amount=0, sender='')

    assert set(excinfo.value.details) == {'amountPaid', 'senderName'}
    kept = db.session.get(Student, student.id, populate_existing=True)
    assert kept.amount_paid == 8000
    assert kept.sender_name == 'Jane Doe'


def test_resubmitted_proof_can_correct_amount(student):
    submit_proof(student.id, amount=8000)

    result = submit_proof(student.id, amount=7000)

    assert result.applied
    assert result.student.amount_paid == 7000
