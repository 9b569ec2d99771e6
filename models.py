from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
import uuid

db = SQLAlchemy()

PAYMENT_STATUSES = ('pending_payment', 'pending_verification', 'approved', 'rejected')
CLASS_TIMINGS = ('morning', 'afternoon')

PROGRAMS = {
    'jamb': 'JAMB',
    'waec': 'WAEC/SSCE',
    'post_utme': 'Post-UTME',
    'jss': 'Junior Secondary (JSS)',
    'edu_consult': 'Edu Consult',
}


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_student_id():
    return uuid.uuid4().hex


def _iso(value):
    return value.isoformat() if value is not None else None


class Student(db.Model):
    id = db.Column(db.String(32), primary_key=True, default=new_student_id)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    address = db.Column(db.String(200), nullable=False)
    date_of_birth = db.Column(db.Date, nullable=False)
    class_timing = db.Column(db.String(20), nullable=False)
    registration_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    amount_paid = db.Column(db.Float, nullable=False, default=0)
    sender_name = db.Column(db.String(100))
    payment_status = db.Column(db.String(30), nullable=False, default='pending_payment', index=True)
    last_payment_date = db.Column(db.DateTime)
    next_payment_due_date = db.Column(db.DateTime)
    last_renewal_at = db.Column(db.DateTime)
    programs = db.relationship('StudentProgram', backref='student', lazy='selectin',
                               cascade="all, delete-orphan", order_by='StudentProgram.code')

    __table_args__ = (
        db.UniqueConstraint('email', name='uq_student_email'),
    )

    @property
    def selected_programs(self):
        return [p.code for p in self.programs]

    def to_dict(self):
        return {
            'id': self.id,
            'fullName': self.full_name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
            'dateOfBirth': _iso(self.date_of_birth),
            'selectedPrograms': self.selected_programs,
            'classTiming': self.class_timing,
            'registrationDate': _iso(self.registration_date),
            'amountPaid': self.amount_paid,
            'senderName': self.sender_name,
            'paymentStatus': self.payment_status,
            'lastPaymentDate': _iso(self.last_payment_date),
            'nextPaymentDueDate': _iso(self.next_payment_due_date),
        }

    def __repr__(self):
        return f"<Student {self.email} {self.payment_status}>"


class StudentProgram(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(32), db.ForeignKey('student.id', name='fk_program_student'),
                           nullable=False, index=True)
    code = db.Column(db.String(30), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('student_id', 'code', name='uq_student_program'),
    )
