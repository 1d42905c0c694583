"""
School Report Cards

Flask web application for a single school: learner records, exam mark
ingestion (Excel upload or manual entry), rubric-based comments and
downloadable report card workbooks.
"""

from flask import Flask, render_template, request, redirect, url_for, session, flash, send_file
from flask_wtf import FlaskForm
from wtforms import StringField, IntegerField, SelectField, validators
from flask_wtf.csrf import CSRFProtect, CSRFError
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.security import generate_password_hash, check_password_hash
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, Alignment
from openpyxl.utils import get_column_letter, column_index_from_string
from openpyxl.utils.exceptions import InvalidFileException
import re
import math
import zipfile
from collections import namedtuple
from io import BytesIO
from datetime import datetime
from functools import wraps

import os
from contextlib import contextmanager

import logging
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name, default=''):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes')


app = Flask(__name__, template_folder='frontend/templates', static_folder='static')
ALLOW_INSECURE_DEFAULTS = _env_flag('ALLOW_INSECURE_DEFAULTS')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

try:
    MAX_UPLOAD_MB = max(1, int(os.environ.get('MAX_UPLOAD_MB', '5')))
except ValueError:
    raise RuntimeError("MAX_UPLOAD_MB must be a whole number of megabytes.")
app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_MB * 1024 * 1024

# Initialize CSRF Protection
csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
DEFAULT_USER_PASSWORD = os.environ.get('DEFAULT_USER_PASSWORD', '').strip()
if not DEFAULT_USER_PASSWORD:
    raise RuntimeError("DEFAULT_USER_PASSWORD is required. Set it in environment variables.")
if not ALLOW_INSECURE_DEFAULTS and len(DEFAULT_USER_PASSWORD) < 8:
    raise RuntimeError("DEFAULT_USER_PASSWORD is too short. Use at least 8 characters in production.")
SCHOOL_NAME = os.environ.get('SCHOOL_NAME', '').strip() or 'St. Michael Ebushibo Comprehensive School'
USER_ROSTER = [
    name.strip()
    for name in os.environ.get('USER_ROSTER', 'TR1,TR2,TR3,TR4,TR5,TR6').split(',')
    if name.strip()
]
PK_COLUMN_SQL = 'SERIAL PRIMARY KEY'

MAX_GRADE = 9
GRADUATED = 'Graduated'
GRADE_VALUES = [str(g) for g in range(1, MAX_GRADE + 1)] + [GRADUATED]
EXAM_TYPES = {'exam1': 'Exam 1', 'exam2': 'Exam 2'}

PRIMARY_SUBJECTS = ('eng', 'kisw', 'math', 'sci_tech', 'c.r.e', 'c.a_sports', 'sst', 'agric')
JUNIOR_SUBJECTS = ('eng', 'kisw', 'math', 'int_sc', 'c.r.e', 'c.a_sports', 'pre_tech', 'sst', 'agric')
LAST_PRIMARY_GRADE = 6

# Marks upload sheet layout: A1 may carry a title, row 4 is the header row,
# learners start on row 5. Columns A..C are row number, admission number and
# name; subjects follow from column D in catalog order.
MARKS_HEADER_ROW = 4
ADM_NUMBER_COLUMN = 'B'
NAME_COLUMN = 'C'
FIRST_SUBJECT_COLUMN = 'D'

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
SHEET_TITLE_MAX = 31
INVALID_SHEET_TITLE_CHARS = re.compile(r'[\\/*?:\[\]]')
REPORT_CARD_HEADER = ['Subjects', 'Exam 1', 'Rubric', 'Exam 2', 'Rubric', 'Comments']
REPORT_CARD_FOOTER = [
    "Class Teacher's Remarks:",
    'Signature:',
    "Head of Institution's Remarks:",
    'Signature:',
    'Term ends on: ______',
    'Next term begins on: ______',
]

# Set up logging
logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'), level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")


def _adapt_query(query):
    return query.replace('?', '%s')

def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)

def get_db():
    """Create a PostgreSQL DB connection."""
    try:
        import psycopg2
        from psycopg2.extras import DictCursor
    except ImportError as exc:
        raise RuntimeError("PostgreSQL backend requires psycopg2-binary") from exc
    return psycopg2.connect(DATABASE_URL, cursor_factory=DictCursor, connect_timeout=10)

@contextmanager
def db_connection(commit=False):
    """Context manager for DB connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()

@contextmanager
def row_savepoint(c):
    """
    Run the writes for one batch row inside a savepoint, so a failed
    statement only discards that row instead of the whole transaction.
    """
    db_execute(c, 'SAVEPOINT batch_row')
    try:
        yield
    except Exception:
        db_execute(c, 'ROLLBACK TO SAVEPOINT batch_row')
        raise
    finally:
        db_execute(c, 'RELEASE SAVEPOINT batch_row')

def init_db():
    """Create the users, learners and marks tables if they are missing."""
    grade_values = ', '.join(f"'{g}'" for g in GRADE_VALUES)
    exam_values = ', '.join(f"'{e}'" for e in EXAM_TYPES)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, f'''CREATE TABLE IF NOT EXISTS users (
                            id {PK_COLUMN_SQL},
                            username TEXT UNIQUE NOT NULL,
                            password_hash TEXT NOT NULL,
                            name TEXT NOT NULL,
                            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                        )''')
        db_execute(c, f'''CREATE TABLE IF NOT EXISTS learners (
                            id {PK_COLUMN_SQL},
                            name TEXT NOT NULL,
                            gender TEXT,
                            adm_number TEXT UNIQUE NOT NULL,
                            grade TEXT NOT NULL CHECK (grade IN ({grade_values})),
                            age INTEGER,
                            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                        )''')
        db_execute(c, f'''CREATE TABLE IF NOT EXISTS marks (
                            id {PK_COLUMN_SQL},
                            learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
                            exam_type TEXT NOT NULL CHECK (exam_type IN ({exam_values})),
                            subject TEXT NOT NULL,
                            mark INTEGER NOT NULL,
                            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                            CONSTRAINT uq_marks_learner_exam_subject UNIQUE (learner_id, exam_type, subject)
                        )''')
        db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_learners_grade ON learners(grade)')
        db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_learners_adm_grade ON learners(adm_number, grade)')
        db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_marks_learner ON marks(learner_id)')

def hash_password(password):
    """Hash a password."""
    return generate_password_hash(password)

def check_password(hashed, password):
    """Verify a password."""
    return check_password_hash(hashed, password)

def create_roster_users():
    """Ensure every roster account exists; existing passwords are left alone."""
    password_hash = hash_password(DEFAULT_USER_PASSWORD)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for username in USER_ROSTER:
            db_execute(
                c,
                '''INSERT INTO users (username, password_hash, name)
                   VALUES (?, ?, ?)
                   ON CONFLICT (username) DO NOTHING''',
                (username, password_hash, username),
            )
            if c.rowcount:
                logging.info("Roster user created: %s", username)

# Initialize database (can be disabled when schema is managed by migrations).
RUN_STARTUP_DDL = _env_flag('RUN_STARTUP_DDL', '1')
if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")
if _env_flag('RUN_STARTUP_BOOTSTRAP', '1'):
    create_roster_users()

# ==================== USERS ====================

def _user_from_row(row):
    return {
        'id': row[0],
        'username': row[1],
        'password_hash': row[2],
        'name': row[3],
    }

def get_user(username):
    """Fetch one user by username (case-insensitive)."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, username, password_hash, name FROM users WHERE LOWER(username) = LOWER(?) LIMIT 1', (username,))
        row = c.fetchone()
        return _user_from_row(row) if row else None

def get_user_by_id(user_id):
    """Fetch one user by id; None when the id is missing or unknown."""
    if not user_id:
        return None
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, username, password_hash, name FROM users WHERE id = ?', (user_id,))
        row = c.fetchone()
        return _user_from_row(row) if row else None

def update_user_name(user_id, name):
    name = ' '.join((name or '').split())
    if not name:
        raise ValueError('Name cannot be empty.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE users SET name = ? WHERE id = ?', (name, user_id))
        if not c.rowcount:
            raise ValueError('User not found.')
    return name

def update_user_password(user_id, new_password):
    if not new_password:
        raise ValueError('New password cannot be empty.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE users SET password_hash = ? WHERE id = ?', (hash_password(new_password), user_id))
        if not c.rowcount:
            raise ValueError('User not found.')

def change_password(user, current_password, new_password):
    """Replace a user's password after verifying the current one."""
    if not check_password(user['password_hash'], current_password or ''):
        raise ValueError('Current password incorrect.')
    update_user_password(user['id'], new_password)

def reset_user_password(user_id):
    """Put an account back on the default roster password."""
    update_user_password(user_id, DEFAULT_USER_PASSWORD)

def login_required(view):
    """
    Load the signed-in user for this request and pass it to the view as the
    first argument. The session only carries the user id.
    """
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = get_user_by_id(session.get('user_id'))
        if not user:
            session.clear()
            return redirect(url_for('login'))
        return view(user, *args, **kwargs)
    return wrapped

# ==================== RUBRIC & SUBJECT CATALOG ====================

Rubric = namedtuple('Rubric', ['score', 'comment'])

# Inclusive upper mark bound of each band, ascending.
RUBRIC_BANDS = (
    (10, Rubric(0.5, 'BE2')),
    (20, Rubric(1.0, 'BE1')),
    (30, Rubric(1.5, 'AE2')),
    (40, Rubric(2.0, 'AE1')),
    (57, Rubric(2.5, 'ME2')),
    (74, Rubric(3.0, 'ME1')),
    (89, Rubric(3.5, 'EE2')),
)
TOP_RUBRIC = Rubric(4.0, 'EE1')

def rubric_for(mark):
    """Map a mark to its rubric score and comment code (e.g. 65 -> (3.0, 'ME1'))."""
    for upper_bound, rubric in RUBRIC_BANDS:
        if mark <= upper_bound:
            return rubric
    return TOP_RUBRIC

def parse_grade(value):
    """Return a numeric grade in 1..MAX_GRADE or raise ValueError."""
    try:
        grade = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError(f'Invalid grade "{value}".')
    if grade < 1 or grade > MAX_GRADE:
        raise ValueError(f'Grade must be between 1 and {MAX_GRADE}.')
    return grade

def subjects_for(grade):
    """Ordered subject codes for a grade; grades up to 6 use the primary list."""
    grade = parse_grade(grade)
    return list(PRIMARY_SUBJECTS if grade <= LAST_PRIMARY_GRADE else JUNIOR_SUBJECTS)

def subject_columns(grade):
    """
    Column letter -> subject code for a grade's marks upload sheet.

    Column D holds the first catalog subject, E the second and so on, so the
    upload sheet for grade 7 runs D (eng) through L (agric).
    """
    start = column_index_from_string(FIRST_SUBJECT_COLUMN)
    return {get_column_letter(start + i): subject for i, subject in enumerate(subjects_for(grade))}

def parse_exam_type(value):
    exam_type = (value or '').strip().lower()
    if exam_type not in EXAM_TYPES:
        raise ValueError('Select a valid exam type.')
    return exam_type

def grade_sort_value(grade):
    """Numeric grades first in order, then Graduated."""
    try:
        return (0, parse_grade(grade))
    except ValueError:
        return (1, 0)

def next_grade(grade):
    """Grade a learner moves to on promotion; past the top grade they graduate."""
    current = parse_grade(grade)
    if current + 1 > MAX_GRADE:
        return GRADUATED
    return str(current + 1)

# ==================== LEARNERS ====================

def _learner_from_row(row):
    return {
        'id': row[0],
        'name': row[1],
        'gender': row[2],
        'adm_number': row[3],
        'grade': row[4],
        'age': row[5],
    }

def add_learner(name, gender, adm_number, grade, age):
    """Create a learner; a duplicate admission number raises ValueError."""
    name = ' '.join((name or '').split())
    adm_number = normalize_adm_number(adm_number)
    grade = parse_grade(grade)
    if not name or not adm_number:
        raise ValueError('Name and admission number are required.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT 1 FROM learners WHERE adm_number = ?', (adm_number,))
        if c.fetchone():
            raise ValueError(f'Admission number {adm_number} already exists.')
        db_execute(
            c,
            '''INSERT INTO learners (name, gender, adm_number, grade, age)
               VALUES (?, ?, ?, ?, ?)
               RETURNING id''',
            (name, (gender or '').strip(), adm_number, str(grade), age),
        )
        learner_id = c.fetchone()[0]
    logging.info("Learner added: %s (%s) grade %s", name, adm_number, grade)
    return learner_id

def list_grades(include_graduated=False):
    """Distinct grades that currently have learners."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT DISTINCT grade FROM learners')
        grades = [str(row[0]) for row in c.fetchall() if row and row[0]]
    if not include_graduated:
        grades = [g for g in grades if g != GRADUATED]
    return sorted(grades, key=grade_sort_value)

def list_learners(grade):
    """Learners in one grade (or the Graduated group), ordered by name."""
    grade_key = GRADUATED if str(grade).strip() == GRADUATED else str(parse_grade(grade))
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id, name, gender, adm_number, grade, age
               FROM learners
               WHERE grade = ?
               ORDER BY LOWER(name), adm_number''',
            (grade_key,),
        )
        return [_learner_from_row(row) for row in c.fetchall()]

def get_learner(learner_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, name, gender, adm_number, grade, age FROM learners WHERE id = ?', (learner_id,))
        row = c.fetchone()
        return _learner_from_row(row) if row else None

def list_learner_marks(learner_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id, exam_type, subject, mark
               FROM marks
               WHERE learner_id = ?
               ORDER BY exam_type, subject''',
            (learner_id,),
        )
        return [
            {'id': row[0], 'exam_type': row[1], 'subject': row[2], 'mark': row[3]}
            for row in c.fetchall()
        ]

def list_all_marks():
    """Every stored mark with the owning learner's name, admission number and grade."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT m.id, m.learner_id, l.name, l.adm_number, l.grade, m.subject, m.exam_type, m.mark
               FROM marks m
               JOIN learners l ON m.learner_id = l.id
               ORDER BY l.grade, LOWER(l.name), m.exam_type, m.subject'''
        )
        return [
            {
                'id': row[0],
                'learner_id': row[1],
                'name': row[2],
                'adm_number': row[3],
                'grade': row[4],
                'subject': row[5],
                'exam_type': row[6],
                'mark': row[7],
            }
            for row in c.fetchall()
        ]

def promote_learners(learner_ids):
    """
    Move each selected learner up one grade, graduating past the top grade.

    Learners are promoted independently: one failure does not stop the rest.
    Returns one outcome per id with status promoted, graduated, skipped or error.
    """
    outcomes = []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for learner_id in learner_ids:
            outcome = {'learner_id': learner_id, 'status': 'error', 'from_grade': '', 'to_grade': '', 'message': ''}
            outcomes.append(outcome)
            try:
                with row_savepoint(c):
                    db_execute(c, 'SELECT grade FROM learners WHERE id = ?', (learner_id,))
                    row = c.fetchone()
                    if not row:
                        outcome['message'] = 'Learner not found.'
                        continue
                    current = str(row[0])
                    outcome['from_grade'] = current
                    if current == GRADUATED:
                        outcome.update(status='skipped', message='Learner has already graduated.')
                        continue
                    target = next_grade(current)
                    db_execute(c, 'UPDATE learners SET grade = ? WHERE id = ?', (target, learner_id))
                    outcome.update(status='graduated' if target == GRADUATED else 'promoted', to_grade=target)
            except Exception as e:
                logging.warning("Promotion failed for learner %s: %s", learner_id, e)
                outcome['message'] = 'Promotion failed.'
    moved = sum(1 for o in outcomes if o['status'] in ('promoted', 'graduated'))
    logging.info("Promoted %s of %s selected learner(s)", moved, len(outcomes))
    return outcomes

# ==================== MARKS ====================

def parse_mark(value):
    """Integer mark from a cell or form value; None when there is no usable mark."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    # Halves round up (40.5 -> 41), not to even.
    return int(math.floor(number + 0.5))

def normalize_adm_number(value):
    """Admission numbers are compared as text; Excel often hands them over as floats."""
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()

def upsert_mark_with_cursor(c, learner_id, exam_type, subject, mark):
    """Insert or replace the single mark kept per (learner, exam type, subject)."""
    db_execute(
        c,
        '''INSERT INTO marks (learner_id, exam_type, subject, mark, updated_at)
           VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
           ON CONFLICT (learner_id, exam_type, subject) DO UPDATE SET
             mark = EXCLUDED.mark,
             updated_at = CURRENT_TIMESTAMP''',
        (learner_id, exam_type, subject, mark),
    )

def _cell(values, column_letter):
    index = column_index_from_string(column_letter) - 1
    return values[index] if index < len(values) else None

def read_marks_workbook(stream):
    """
    Read an uploaded marks workbook.

    Returns (title, rows) where title is cell A1 of the first sheet (or the
    configured school name) and rows is a list of (row_number, values) for
    every row below the header row.
    """
    try:
        wb = load_workbook(stream, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise ValueError('Please upload a valid Excel workbook (.xlsx).') from exc
    ws = wb.worksheets[0]
    title = ws.cell(row=1, column=1).value
    title = str(title).strip() if title is not None and str(title).strip() else SCHOOL_NAME
    first_row = MARKS_HEADER_ROW + 1
    rows = [
        (row_number, list(values))
        for row_number, values in enumerate(ws.iter_rows(min_row=first_row, values_only=True), start=first_row)
    ]
    return title, rows

def ingest_mark_rows(grade, exam_type, rows):
    """
    Upsert marks from upload sheet rows for one grade and exam type.

    Each row is matched to a learner by admission number within the grade;
    rows that match nobody are skipped without touching the others. Returns
    one outcome per non-blank row.
    """
    grade = parse_grade(grade)
    exam_type = parse_exam_type(exam_type)
    columns = subject_columns(grade)
    outcomes = []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for row_number, values in rows:
            values = list(values or [])
            if not any(v is not None and str(v).strip() for v in values):
                continue
            adm_number = normalize_adm_number(_cell(values, ADM_NUMBER_COLUMN))
            name = _cell(values, NAME_COLUMN)
            outcome = {
                'row': row_number,
                'adm_number': adm_number,
                'name': str(name).strip() if name is not None else '',
                'status': 'skipped',
                'saved': 0,
                'message': '',
            }
            outcomes.append(outcome)
            if not adm_number:
                outcome['message'] = 'Missing admission number.'
                continue
            marks = {}
            for letter, subject in columns.items():
                mark = parse_mark(_cell(values, letter))
                if mark is not None:
                    marks[subject] = mark
            try:
                with row_savepoint(c):
                    db_execute(c, 'SELECT id FROM learners WHERE adm_number = ? AND grade = ?', (adm_number, str(grade)))
                    learner = c.fetchone()
                    if not learner:
                        outcome['message'] = f'No learner with admission number {adm_number} in grade {grade}.'
                        continue
                    if not marks:
                        outcome['message'] = 'No marks entered.'
                        continue
                    for subject, mark in marks.items():
                        upsert_mark_with_cursor(c, learner[0], exam_type, subject, mark)
                    outcome.update(status='saved', saved=len(marks))
            except Exception as e:
                logging.warning("Marks upload row %s (%s) failed: %s", row_number, adm_number, e)
                outcome.update(status='error', message='Could not save marks for this row.')
    summary = summarize_outcomes(outcomes)
    logging.info(
        "Marks upload grade %s %s: %s row(s) saved, %s skipped, %s failed",
        grade, exam_type, summary['saved'], summary['skipped'], summary['errors'],
    )
    return outcomes

def ingest_direct_marks(grade, exam_type, marks_by_learner):
    """
    Upsert marks typed in by hand: learner id -> subject code -> raw value.

    Blank or non-numeric values are ignored; subject codes outside the
    grade's catalog are reported and not stored. Learners whose stored grade
    is no longer ``grade`` are skipped.
    """
    grade = parse_grade(grade)
    exam_type = parse_exam_type(exam_type)
    allowed = subjects_for(grade)
    outcomes = []
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        stored_grades = {}
        if marks_by_learner:
            db_execute(c, 'SELECT id, grade FROM learners WHERE id = ANY(?)', (list(marks_by_learner),))
            stored_grades = {row[0]: str(row[1]) for row in c.fetchall()}
        for learner_id, subject_values in marks_by_learner.items():
            outcome = {'learner_id': learner_id, 'status': 'skipped', 'saved': 0, 'message': ''}
            outcomes.append(outcome)
            unknown = sorted(s for s in subject_values if s not in allowed)
            marks = {}
            for subject in allowed:
                mark = parse_mark(subject_values.get(subject))
                if mark is not None:
                    marks[subject] = mark
            if unknown:
                outcome['message'] = f"Not a grade {grade} subject: {', '.join(unknown)}."
            if not marks:
                outcome['message'] = outcome['message'] or 'No marks entered.'
                continue
            if learner_id not in stored_grades:
                outcome.update(status='error', message='Learner not found.')
                continue
            if stored_grades[learner_id] != str(grade):
                outcome['message'] = f'Learner is in grade {stored_grades[learner_id]}, not grade {grade}.'
                continue
            try:
                with row_savepoint(c):
                    for subject, mark in marks.items():
                        upsert_mark_with_cursor(c, learner_id, exam_type, subject, mark)
                outcome.update(status='saved', saved=len(marks))
            except Exception as e:
                logging.warning("Direct marks for learner %s failed: %s", learner_id, e)
                outcome.update(status='error', message='Could not save marks for this learner.')
    summary = summarize_outcomes(outcomes)
    logging.info(
        "Direct marks grade %s %s: %s learner(s) saved, %s failed",
        grade, exam_type, summary['saved'], summary['errors'],
    )
    return outcomes

def summarize_outcomes(outcomes):
    summary = {'saved': 0, 'marks': 0, 'skipped': 0, 'errors': 0}
    for outcome in outcomes:
        if outcome['status'] == 'saved':
            summary['saved'] += 1
            summary['marks'] += outcome.get('saved', 0)
        elif outcome['status'] == 'error':
            summary['errors'] += 1
        else:
            summary['skipped'] += 1
    return summary

def update_mark(mark_id, value):
    """Overwrite one stored mark; returns the owning learner id."""
    mark = parse_mark(value)
    if mark is None:
        raise ValueError('Enter a numeric mark.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE marks SET mark = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ? RETURNING learner_id',
            (mark, mark_id),
        )
        row = c.fetchone()
    if not row:
        raise ValueError('Mark not found.')
    logging.info("Mark %s updated to %s", mark_id, mark)
    return row[0]

def delete_mark(mark_id):
    """Remove one stored mark; returns the owning learner id."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM marks WHERE id = ? RETURNING learner_id', (mark_id,))
        row = c.fetchone()
    if not row:
        raise ValueError('Mark not found.')
    logging.info("Mark %s deleted", mark_id)
    return row[0]

def workbook_bytes(wb):
    output = BytesIO()
    wb.save(output)
    return output.getvalue()

def build_upload_template(grade):
    """Blank marks upload workbook for a grade, prefilled with its learners."""
    grade = parse_grade(grade)
    learners = list_learners(grade)
    columns = subject_columns(grade)
    wb = Workbook()
    ws = wb.active
    ws.title = f'Grade {grade}'
    ws['A1'] = SCHOOL_NAME
    ws['A1'].font = Font(bold=True, size=14)
    ws['A2'] = f'Grade {grade} marks. Fill one exam at a time; choose the exam when uploading.'
    header = {'A': 'No.', ADM_NUMBER_COLUMN: 'Adm No.', NAME_COLUMN: 'Name'}
    header.update(columns)
    for letter, label in header.items():
        cell = ws[f'{letter}{MARKS_HEADER_ROW}']
        cell.value = label
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal='center')
    for index, learner in enumerate(learners, start=1):
        row = MARKS_HEADER_ROW + index
        ws[f'A{row}'] = index
        ws[f'{ADM_NUMBER_COLUMN}{row}'] = learner['adm_number']
        ws[f'{NAME_COLUMN}{row}'] = learner['name']
    ws.column_dimensions[NAME_COLUMN].width = 28
    ws.freeze_panes = f'{FIRST_SUBJECT_COLUMN}{MARKS_HEADER_ROW + 1}'
    return workbook_bytes(wb)

# ==================== REPORT CARDS ====================

def load_marks_for_learners(learner_ids):
    """
    Fetch every mark for the given learners in one query.

    Returns learner id -> {(exam_type, subject): mark}; learners without marks
    map to an empty dict.
    """
    marks_by_learner = {learner_id: {} for learner_id in learner_ids}
    if not learner_ids:
        return marks_by_learner
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT learner_id, exam_type, subject, mark FROM marks WHERE learner_id = ANY(?)',
            (list(learner_ids),),
        )
        for learner_id, exam_type, subject, mark in c.fetchall():
            marks_by_learner.setdefault(learner_id, {})[(exam_type, subject)] = mark
    return marks_by_learner

def _exam_cells(mark):
    if mark is None:
        return '', '', ''
    rubric = rubric_for(mark)
    return mark, rubric.score, rubric.comment

def build_report_card_rows(learner, marks, grade, school_name=None, year=None):
    """Rows of one learner's report card sheet, top to bottom."""
    year = year or datetime.now().year
    rows = [
        [school_name or SCHOOL_NAME],
        [f"Name: {learner['name']}", f"Adm: {learner['adm_number']}", f'Grade: {grade}', f'Year: {year}'],
        list(REPORT_CARD_HEADER),
    ]
    for subject in subjects_for(grade):
        mark1, rubric1, comment1 = _exam_cells(marks.get(('exam1', subject)))
        mark2, rubric2, comment2 = _exam_cells(marks.get(('exam2', subject)))
        rows.append([subject, mark1, rubric1, mark2, rubric2, comment1 or comment2])
    rows.extend([line] for line in REPORT_CARD_FOOTER)
    return rows

def sheet_title_for(name, used_titles):
    """Sheet title from a learner name: illegal characters replaced, 31 chars max, unique."""
    base = INVALID_SHEET_TITLE_CHARS.sub('_', ' '.join((name or '').split())).strip("'") or 'Learner'
    base = base[:SHEET_TITLE_MAX].strip("'") or 'Learner'
    title = base
    counter = 2
    while title.lower() in used_titles:
        suffix = f' ({counter})'
        title = base[:SHEET_TITLE_MAX - len(suffix)] + suffix
        counter += 1
    used_titles.add(title.lower())
    return title

def build_report_cards_workbook(grade, learners, marks_by_learner, school_name=None, year=None):
    """One report card sheet per learner, in the order given."""
    grade = parse_grade(grade)
    subject_count = len(subjects_for(grade))
    wb = Workbook()
    wb.remove(wb.active)
    used_titles = set()
    for learner in learners:
        ws = wb.create_sheet(title=sheet_title_for(learner['name'], used_titles))
        rows = build_report_card_rows(learner, marks_by_learner.get(learner['id'], {}), grade, school_name, year)
        for row in rows:
            ws.append([None if value == '' else value for value in row])
        ws['A1'].font = Font(bold=True, size=14)
        for cell in ws[3]:
            cell.font = Font(bold=True)
            cell.alignment = Alignment(horizontal='center')
        for row in ws.iter_rows(min_row=4, max_row=3 + subject_count, min_col=2, max_col=6):
            for cell in row:
                cell.alignment = Alignment(horizontal='center')
        ws.column_dimensions['A'].width = 34
        for col in range(2, len(REPORT_CARD_HEADER) + 1):
            ws.column_dimensions[get_column_letter(col)].width = 12
    return wb

def generate_report_cards(grade, year=None):
    """Build the report card workbook for a grade; returns (filename, xlsx bytes)."""
    grade = parse_grade(grade)
    learners = list_learners(grade)
    if not learners:
        raise ValueError(f'No learners found in grade {grade}.')
    marks_by_learner = load_marks_for_learners([learner['id'] for learner in learners])
    wb = build_report_cards_workbook(grade, learners, marks_by_learner, year=year)
    logging.info("Report cards generated for grade %s (%s learner(s))", grade, len(learners))
    return f'cards_grade_{grade}.xlsx', workbook_bytes(wb)

# ==================== FORMS ====================

GRADE_CHOICES = [(str(g), str(g)) for g in range(1, MAX_GRADE + 1)]

class AddLearnerForm(FlaskForm):
    name = StringField('Name', [validators.InputRequired(), validators.Length(max=120)])
    gender = StringField('Gender', [validators.InputRequired(), validators.Length(max=20)])
    adm_number = StringField('Adm Number', [validators.InputRequired(), validators.Length(max=40)])
    grade = SelectField('Grade', choices=GRADE_CHOICES)
    age = IntegerField('Age', [validators.InputRequired(), validators.NumberRange(min=1, max=30)])

def parse_mark_grid(form):
    """Collect ``marks-<learner_id>-<subject>`` fields into learner id -> subject -> raw value."""
    grid = {}
    for key, value in form.items():
        parts = key.split('-', 2)
        if len(parts) != 3 or parts[0] != 'marks' or not parts[1].isdigit():
            continue
        grid.setdefault(int(parts[1]), {})[parts[2]] = value
    return grid

def _grade_or_none(value):
    try:
        return parse_grade(value)
    except ValueError:
        return None

# ==================== ROUTES ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    if 'user_id' in session:
        flash('Form token expired/invalid. Please retry your last action.', 'error')
        return redirect(request.referrer or url_for('home'))
    flash('Your session has expired. Please login again.', 'error')
    return redirect(url_for('login'))

@app.errorhandler(RequestEntityTooLarge)
def upload_too_large(error):
    flash(f'File is too large. The limit is {MAX_UPLOAD_MB} MB.', 'error')
    return redirect(request.referrer or url_for('home'))

@app.route('/')
@login_required
def home(user):
    return render_template('shared/home.html', user=user, grades=range(1, MAX_GRADE + 1))

@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        username = request.form.get('username', '').strip()
        password = request.form.get('password', '')
        if not username or not password:
            flash('Please enter username and password.', 'error')
            return render_template('shared/login.html')
        user = get_user(username)
        if user and check_password(user['password_hash'], password):
            session.clear()
            session['user_id'] = user['id']
            logging.info("User logged in: %s", user['username'])
            return redirect(url_for('home'))
        logging.warning("Failed login for username: %s", username)
        flash('Invalid credentials', 'error')
    return render_template('shared/login.html')

@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('login'))

@app.route('/change-name', methods=['POST'])
@login_required
def change_name(user):
    try:
        update_user_name(user['id'], request.form.get('name', ''))
        flash('Name updated.', 'success')
    except ValueError as e:
        flash(str(e), 'error')
    return redirect(url_for('home'))

@app.route('/change-password', methods=['POST'])
@login_required
def change_password_route(user):
    try:
        change_password(user, request.form.get('current_password', ''), request.form.get('new_password', ''))
        flash('Password changed successfully!', 'success')
    except ValueError as e:
        flash(str(e), 'error')
    return redirect(url_for('home'))

@app.route('/reset-password', methods=['POST'])
@login_required
def reset_password(user):
    reset_user_password(user['id'])
    logging.info("Password reset to default for %s", user['username'])
    flash('Password reset to the default password.', 'success')
    return redirect(url_for('home'))

@app.route('/add-learner', methods=['GET', 'POST'])
@login_required
def add_learner_route(user):
    form = AddLearnerForm()
    if form.validate_on_submit():
        try:
            add_learner(
                name=form.name.data,
                gender=form.gender.data,
                adm_number=form.adm_number.data,
                grade=form.grade.data,
                age=form.age.data,
            )
            flash(f'Learner {form.name.data} added.', 'success')
            return redirect(url_for('home'))
        except Exception as e:
            flash(f'Error adding learner: {str(e)}', 'error')
    elif request.method == 'POST':
        flash('Please correct the highlighted fields.', 'error')
    return render_template('learners/add_learner.html', user=user, form=form)

@app.route('/upload/grade/<int:grade>', methods=['GET', 'POST'])
@login_required
def upload_grade(user, grade):
    if _grade_or_none(grade) is None:
        flash(f'Grade must be between 1 and {MAX_GRADE}.', 'error')
        return redirect(url_for('home'))

    upload_result = None
    if request.method == 'POST':
        try:
            exam_type = parse_exam_type(request.form.get('exam_type'))
            file = request.files.get('excel_file')
            if not file or not (file.filename or '').lower().endswith('.xlsx'):
                raise ValueError('Please upload a valid Excel workbook (.xlsx).')
            title, rows = read_marks_workbook(BytesIO(file.read()))
            outcomes = ingest_mark_rows(grade, exam_type, rows)
            summary = summarize_outcomes(outcomes)
            upload_result = {
                'title': title,
                'exam_type': exam_type,
                'outcomes': outcomes,
                'summary': summary,
            }
            flash(
                f"Saved {summary['marks']} mark(s) for {summary['saved']} learner(s). "
                f"{summary['skipped']} row(s) skipped, {summary['errors']} failed.",
                'success' if not summary['errors'] else 'error',
            )
        except ValueError as e:
            flash(str(e), 'error')

    return render_template(
        'marks/upload_grade.html',
        user=user,
        grade=grade,
        exam_types=EXAM_TYPES,
        columns=subject_columns(grade),
        upload_result=upload_result,
    )

@app.route('/upload/grade/<int:grade>/template')
@login_required
def upload_grade_template(user, grade):
    if _grade_or_none(grade) is None:
        flash(f'Grade must be between 1 and {MAX_GRADE}.', 'error')
        return redirect(url_for('home'))
    return send_file(
        BytesIO(build_upload_template(grade)),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=f'marks_upload_grade_{grade}.xlsx',
    )

@app.route('/upload-marks', methods=['GET', 'POST'])
@login_required
def upload_marks(user):
    if request.method == 'POST':
        grade = request.form.get('grade', '')
        try:
            learner_id = int(request.form.get('learner_id', ''))
        except ValueError:
            flash('Select a learner.', 'error')
            return redirect(url_for('upload_marks', grade=grade))
        subject_values = {
            key[len('mark-'):]: value
            for key, value in request.form.items()
            if key.startswith('mark-')
        }
        try:
            outcomes = ingest_direct_marks(grade, request.form.get('exam_type'), {learner_id: subject_values})
            outcome = outcomes[0]
            if outcome['status'] == 'saved':
                flash(f"Saved {outcome['saved']} mark(s).", 'success')
            else:
                flash(outcome['message'] or 'No marks saved.', 'error')
        except ValueError as e:
            flash(str(e), 'error')
        return redirect(url_for('upload_marks', grade=grade))

    grade = _grade_or_none(request.args.get('grade', ''))
    return render_template(
        'marks/upload_marks.html',
        user=user,
        grades=list_grades(),
        grade=grade,
        learners=list_learners(grade) if grade else [],
        subjects=subjects_for(grade) if grade else [],
        exam_types=EXAM_TYPES,
    )

@app.route('/direct-marks-upload')
@login_required
def direct_marks_upload(user):
    grade = _grade_or_none(request.args.get('grade', ''))
    return render_template(
        'marks/direct_marks.html',
        user=user,
        grades=list_grades(),
        grade=grade,
        learners=list_learners(grade) if grade else [],
        subjects=subjects_for(grade) if grade else [],
        exam_types=EXAM_TYPES,
    )

@app.route('/direct-marks-upload/save', methods=['POST'])
@login_required
def direct_marks_save(user):
    grade = request.form.get('grade', '')
    try:
        outcomes = ingest_direct_marks(grade, request.form.get('exam_type'), parse_mark_grid(request.form))
        summary = summarize_outcomes(outcomes)
        flash(
            f"Saved {summary['marks']} mark(s) for {summary['saved']} learner(s). {summary['errors']} failed.",
            'success' if not summary['errors'] else 'error',
        )
    except ValueError as e:
        flash(str(e), 'error')
    return redirect(url_for('direct_marks_upload', grade=grade))

@app.route('/records')
@login_required
def records(user):
    return render_template('records/index.html', user=user)

@app.route('/records/learners')
@login_required
def records_learners(user):
    return render_template('records/learners.html', user=user, grades=list_grades(include_graduated=True), grade=None, learners=None)

@app.route('/records/learners/grade/<grade>')
@login_required
def records_learners_grade(user, grade):
    try:
        learners = list_learners(grade)
    except ValueError as e:
        flash(str(e), 'error')
        return redirect(url_for('records_learners'))
    return render_template('records/learners.html', user=user, grades=None, grade=grade, learners=learners)

@app.route('/records/learners/promote', methods=['POST'])
@login_required
def records_promote(user):
    learner_ids = [int(v) for v in request.form.getlist('learners') if str(v).strip().isdigit()]
    if not learner_ids:
        flash('Select at least one learner to promote.', 'error')
        return redirect(request.referrer or url_for('records_learners'))
    outcomes = promote_learners(learner_ids)
    moved = sum(1 for o in outcomes if o['status'] in ('promoted', 'graduated'))
    failed = [o for o in outcomes if o['status'] != 'promoted' and o['status'] != 'graduated']
    flash(f'Promoted {moved} learner(s).', 'success')
    if failed:
        flash(f'{len(failed)} learner(s) not promoted: ' + '; '.join(o['message'] for o in failed), 'error')
    return redirect(url_for('records_learners'))

@app.route('/records/learners/marks/<int:learner_id>')
@login_required
def learner_marks(user, learner_id):
    learner = get_learner(learner_id)
    if not learner:
        flash('Learner not found.', 'error')
        return redirect(url_for('records_learners'))
    return render_template(
        'records/learner_marks.html',
        user=user,
        learner=learner,
        marks=list_learner_marks(learner_id),
        exam_types=EXAM_TYPES,
    )

def _after_mark_change(learner_id):
    if request.form.get('return_to') == 'uploads' or not learner_id:
        return redirect(url_for('records_uploads'))
    return redirect(url_for('learner_marks', learner_id=learner_id))

@app.route('/records/learners/marks/edit', methods=['POST'])
@login_required
def edit_mark(user):
    learner_id = None
    try:
        learner_id = update_mark(int(request.form.get('mark_id', '')), request.form.get('mark'))
        flash('Mark updated.', 'success')
    except ValueError as e:
        flash(f'Error updating mark: {str(e)}', 'error')
    return _after_mark_change(learner_id or request.form.get('learner_id', type=int))

@app.route('/records/learners/marks/delete', methods=['POST'])
@login_required
def remove_mark(user):
    learner_id = None
    try:
        learner_id = delete_mark(int(request.form.get('mark_id', '')))
        flash('Mark deleted.', 'success')
    except ValueError as e:
        flash(f'Error deleting mark: {str(e)}', 'error')
    return _after_mark_change(learner_id or request.form.get('learner_id', type=int))

@app.route('/records/uploads')
@login_required
def records_uploads(user):
    return render_template('records/uploads.html', user=user, marks=list_all_marks(), exam_types=EXAM_TYPES)

@app.route('/records/cards')
@login_required
def records_cards(user):
    return render_template('records/cards.html', user=user, grades=list_grades())

@app.route('/generate-cards/grade/<int:grade>')
@login_required
def generate_cards(user, grade):
    try:
        filename, content = generate_report_cards(grade)
    except ValueError as e:
        flash(str(e), 'error')
        return redirect(url_for('records_cards'))
    return send_file(
        BytesIO(content),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=filename,
    )

# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = _env_flag('FLASK_DEBUG', '0')
    app.run(host='0.0.0.0', port=port, debug=debug)
