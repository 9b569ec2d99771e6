from flask import Flask, request, jsonify, send_file
from flask_migrate import Migrate
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash
from sqlalchemy.engine import make_url
from dotenv import load_dotenv
import logging
import os

from errors import PaymentServiceError, ValidationError
from models import db
import services

# Load environment variables
load_dotenv()

DATABASE_URL = os.getenv('DATABASE_URL')
if not DATABASE_URL:
    raise RuntimeError('Invalid/Missing environment variable: "DATABASE_URL"')

SECRET_KEY = os.getenv('SECRET_KEY')
if not SECRET_KEY:
    raise RuntimeError('Invalid/Missing environment variable: "SECRET_KEY"')

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)

# Initialize Flask app
app = Flask(__name__)

# Configure app
app.config.update(
    SQLALCHEMY_DATABASE_URI=DATABASE_URL,
    SQLALCHEMY_TRACK_MODIFICATIONS=False,
    SECRET_KEY=SECRET_KEY,
    ADMIN_USERNAME=os.getenv('ADMIN_USERNAME', 'admin'),
    ADMIN_PASSWORD_HASH=os.getenv('ADMIN_PASSWORD_HASH'),
    STORE_RETRIES=int(os.getenv('STORE_RETRIES', '3')),
    STORE_RETRY_DELAY=float(os.getenv('STORE_RETRY_DELAY', '0.1')),
    RENEWAL_REPLAY_WINDOW=int(os.getenv('RENEWAL_REPLAY_WINDOW', '60')),
)

# Initialize extensions
login_manager = LoginManager()
login_manager.init_app(app)

db.init_app(app)
migrate = Migrate(app, db)

app.logger.info('Using database %s', make_url(DATABASE_URL).render_as_string(hide_password=True))
if not app.config['ADMIN_PASSWORD_HASH']:
    app.logger.warning('ADMIN_PASSWORD_HASH is not set; admin login is disabled')


# Single admin account; the password hash comes from the environment
class User(UserMixin):
    id = 1

    @staticmethod
    def get(user_id):
        if user_id == 1:
            return User()
        return None


@login_manager.user_loader
def load_user(user_id):
    return User.get(int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(error='Admin login required', details=None, code='unauthorized'), 401


@app.errorhandler(PaymentServiceError)
def handle_service_error(error):
    if error.status_code >= 500:
        app.logger.error('%s %s failed: %s (%s)', request.method, request.path, error.message, error.details)
    else:
        app.logger.info('%s %s rejected: %s', request.method, request.path, error.message)
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return jsonify(error=error.name, details=error.description, code=error.code), error.code


def _json_body():
    return request.get_json(silent=True)


def _listing_args():
    filters = {key: request.args.get(key) for key in
               ('classTiming', 'program', 'amountRange', 'search', 'paymentStatus')}
    sort_key = request.args.get('sort', 'registrationDate')
    direction = request.args.get('direction', 'desc')
    if direction not in ('asc', 'desc'):
        raise ValidationError(f'Unknown sort direction: {direction}', details={'direction': ['asc', 'desc']})
    return filters, sort_key, direction == 'desc'


# Routes
@app.route('/login', methods=['POST'])
def login():
    data = _json_body() or request.form
    username = data.get('username', '')
    password = data.get('password', '')
    password_hash = app.config['ADMIN_PASSWORD_HASH']
    if password_hash and username == app.config['ADMIN_USERNAME'] \
            and check_password_hash(password_hash, password):
        login_user(User())
        app.logger.info('Admin logged in')
        return jsonify(message='Login successful')
    app.logger.warning('Failed admin login for %r', username)
    return jsonify(error='Invalid username or password', details=None, code='invalid_credentials'), 401


@app.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify(message='Logged out')


@app.route('/students', methods=['GET'])
@login_required
def list_students():
    filters, sort_key, descending = _listing_args()
    students = services.list_students(filters, sort_key, descending)
    app.logger.info('Fetched %d students', len(students))
    return jsonify(students=[s.to_dict() for s in students])


@app.route('/students', methods=['POST'])
def register_student():
    student = services.register(_json_body())
    return jsonify(message='Student registered successfully', studentId=student.id,
                   student=student.to_dict()), 201


@app.route('/students/<student_id>', methods=['GET'])
def get_student(student_id):
    student = services.get_student(student_id)
    return jsonify(student=student.to_dict())


def _is_proof_submission(patch):
    """Students may only move their own record to pending_verification."""
    return isinstance(patch, dict) \
        and patch.get('paymentStatus') == 'pending_verification' \
        and not patch.get('isMonthlyRenewal')


@app.route('/students/<student_id>', methods=['PATCH'])
def update_payment(student_id):
    patch = _json_body()
    if not _is_proof_submission(patch) and not current_user.is_authenticated:
        return login_manager.unauthorized()
    result = services.update_payment(student_id, patch if patch is not None else {})
    return jsonify(message=result.message, applied=result.applied, studentId=student_id,
                   student=result.student.to_dict())


@app.route('/stats')
@login_required
def stats():
    filters, sort_key, descending = _listing_args()
    students = services.list_students(filters, sort_key, descending)
    return jsonify(services.summarize(students))


@app.route('/download_report')
@login_required
def download_report():
    filters, sort_key, descending = _listing_args()
    fmt = request.args.get('format', 'csv')
    students = services.list_students(filters, sort_key, descending)
    output = services.build_report(students, fmt)
    if fmt == 'xlsx':
        return send_file(
            output,
            as_attachment=True,
            download_name='student_registrations.xlsx',
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        )
    return send_file(
        output,
        as_attachment=True,
        download_name='student_registrations.csv',
        mimetype='text/csv'
    )


if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    app.run(debug=os.getenv('FLASK_DEBUG') == '1')
