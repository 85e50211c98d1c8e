"""
E-shuri - Rwanda Learning Platform

Flask web application serving student and teacher dashboards. Every page loads
a fresh snapshot of the learner's records from PostgreSQL and hands it to the
pure aggregation functions in performance.py.
"""

from flask import Flask, render_template, request, redirect, url_for, session, flash, jsonify
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_migrate import Migrate
from werkzeug.security import check_password_hash
from collections import namedtuple
from contextlib import contextmanager
import logging
import os

import psycopg2
from psycopg2.extras import DictCursor
from dotenv import load_dotenv

from performance import (
    compute_summary,
    compute_progress_stats,
    build_attempt_history,
    format_duration,
    summarize_students,
    time_spent_hours,
)

load_dotenv()

app = Flask(__name__, template_folder='frontend/templates', static_folder='static')
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
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

csrf = CSRFProtect(app)
migrate = Migrate(app, directory='migrations')

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")

ROLES = ('admin', 'teacher', 'student')

logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'), level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")


def get_db():
    """Create a PostgreSQL DB connection."""
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

def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(query)
    return cursor.execute(query, params)

# ==================== SESSION CONTEXT ====================

LearnerSession = namedtuple('LearnerSession', ['user_id', 'role', 'full_name'])

def current_learner():
    """Build the signed-in user's context from the cookie session, or None."""
    user_id = session.get('user_id')
    role = session.get('role')
    if not user_id or role not in ROLES:
        return None
    return LearnerSession(user_id=user_id, role=role, full_name=session.get('full_name') or '')

def start_session(user, full_name):
    session.clear()
    session['user_id'] = user['id']
    session['role'] = user['role']
    session['full_name'] = full_name

# ==================== DATA ACCESS ====================

def get_user(username):
    """Fetch one user by username (case-insensitive)."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, username, password_hash, role FROM users WHERE LOWER(username) = LOWER(%s) LIMIT 1', (username,))
        row = c.fetchone()
        if not row:
            return None
        return {
            'id': str(row[0]),
            'username': row[1],
            'password_hash': row[2],
            'role': row[3] or 'student',
        }

def get_profile(user_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, full_name, class_year, level FROM profiles WHERE id = %s', (user_id,))
        row = c.fetchone()
        if not row:
            return None
        return {'id': str(row[0]), 'full_name': row[1] or '', 'class_year': row[2], 'level': row[3]}

def count_subjects():
    """Total number of subjects in the catalogue."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) FROM subjects')
        row = c.fetchone()
        return int(row[0] or 0) if row else 0

def load_subjects():
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, name, description, level FROM subjects ORDER BY name')
        return [
            {'id': str(row[0]), 'name': row[1], 'description': row[2] or '', 'level': row[3] or ''}
            for row in c.fetchall()
        ]

def filter_subjects(subjects, term):
    """Case-insensitive match of the search term against name or description."""
    needle = (term or '').strip().lower()
    if not needle:
        return list(subjects)
    return [
        s for s in subjects
        if needle in (s.get('name') or '').lower() or needle in (s.get('description') or '').lower()
    ]

def load_quizzes():
    """Quiz catalogue, newest first."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT q.id, q.title, q.description, q.time_limit_minutes, s.name
               FROM quizzes q
               LEFT JOIN subjects s ON s.id = q.subject_id
               ORDER BY q.created_at DESC''',
        )
        return [
            {
                'id': str(row[0]),
                'title': row[1],
                'description': row[2] or '',
                'time_limit_minutes': row[3],
                'subject_name': row[4] or 'Unknown',
            }
            for row in c.fetchall()
        ]

def _attempt_from_row(row):
    student_id, attempt_id, score, max_score, subject_id, duration, completed_at, quiz_title, subject_name = row
    return {
        'student_id': str(student_id),
        'id': str(attempt_id),
        'score': score,
        'max_score': max_score,
        'subject_id': str(subject_id) if subject_id is not None else None,
        'duration_seconds': duration,
        'completed_at': completed_at,
        'quiz_title': quiz_title or '',
        'subject_name': subject_name or 'Unknown',
    }

ATTEMPT_SELECT = '''SELECT qa.student_id, qa.id, qa.score, qa.max_score, q.subject_id, qa.duration_seconds,
                           qa.completed_at, q.title, s.name
                    FROM quiz_attempts qa
                    JOIN quizzes q ON q.id = qa.quiz_id
                    LEFT JOIN subjects s ON s.id = q.subject_id'''

def load_quiz_attempts(student_id, completed_only=False):
    """Load every attempt of one student, in-progress ones included unless completed_only."""
    query = ATTEMPT_SELECT + ' WHERE qa.student_id = %s'
    if completed_only:
        query += ' AND qa.completed_at IS NOT NULL'
    query += ' ORDER BY qa.completed_at DESC NULLS LAST'
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, (student_id,))
        return [_attempt_from_row(row) for row in c.fetchall()]

def load_attempts_for_students(student_ids):
    """Load attempts for several students, grouped by student id."""
    ids = [str(s) for s in (student_ids or []) if s]
    if not ids:
        return {}
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, ATTEMPT_SELECT + ' WHERE qa.student_id::text = ANY(%s)', (ids,))
        grouped = {}
        for row in c.fetchall():
            attempt = _attempt_from_row(row)
            grouped.setdefault(attempt['student_id'], []).append(attempt)
        return grouped

ENROLLMENT_SELECT = '''SELECT sc.student_id, sc.subject_id, sc.progress, s.name
                       FROM student_courses sc
                       LEFT JOIN subjects s ON s.id = sc.subject_id'''

def _enrollment_from_row(row):
    return {
        'student_id': str(row[0]),
        'subject_id': str(row[1]),
        'progress': row[2],
        'subject_name': row[3] or 'Unknown',
    }

def load_enrollments(student_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, ENROLLMENT_SELECT + ' WHERE sc.student_id = %s ORDER BY s.name', (student_id,))
        return [_enrollment_from_row(row) for row in c.fetchall()]

def load_enrollments_for_students(student_ids):
    ids = [str(s) for s in (student_ids or []) if s]
    if not ids:
        return {}
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, ENROLLMENT_SELECT + ' WHERE sc.student_id::text = ANY(%s)', (ids,))
        grouped = {}
        for row in c.fetchall():
            enrollment = _enrollment_from_row(row)
            grouped.setdefault(enrollment['student_id'], []).append(enrollment)
        return grouped

def load_teacher_subject_ids(teacher_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT subject_id FROM teacher_subjects WHERE teacher_id = %s', (teacher_id,))
        return [str(row[0]) for row in c.fetchall()]

def load_students_for_subjects(subject_ids):
    """Map student id -> full name for students enrolled in any of the subjects."""
    ids = [str(s) for s in (subject_ids or []) if s]
    if not ids:
        return {}
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT DISTINCT p.id, p.full_name
               FROM student_courses sc
               JOIN profiles p ON p.id = sc.student_id
               WHERE sc.subject_id::text = ANY(%s)''',
            (ids,),
        )
        return {str(row[0]): row[1] or '' for row in c.fetchall()}

def build_student_performance(learner):
    """Fetch one snapshot for the learner and aggregate it."""
    total_subjects = count_subjects()
    attempts = load_quiz_attempts(learner.user_id)
    enrollments = load_enrollments(learner.user_id)
    summary = compute_summary(attempts, enrollments, total_subjects)
    summary['time_spent'] = format_duration(summary['total_time_spent_seconds'])
    summary['time_spent_hours'] = time_spent_hours(summary['total_time_spent_seconds'])
    return summary, enrollments

# ==================== ROUTES ====================

@app.route('/')
def home():
    if current_learner():
        return redirect(url_for('dashboard'))
    return render_template('index.html')

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    flash('Your session has expired. Please login again.', 'error')
    return redirect(url_for('login'))

@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        username = request.form.get('username', '').strip().lower()
        password = request.form.get('password', '')
        if not username or not password:
            flash('Please enter username and password.', 'error')
            return render_template('login.html')

        try:
            user = get_user(username)
        except psycopg2.Error:
            logging.exception("Login lookup failed for %s", username)
            flash('Sign-in is temporarily unavailable. Please try again.', 'error')
            return render_template('login.html')

        if not user or not check_password_hash(user['password_hash'], password):
            logging.info("Failed login for %s", username)
            flash('Invalid username or password.', 'error')
            return render_template('login.html')
        if user['role'] not in ROLES:
            flash('Invalid account role configuration. Contact system administrator.', 'error')
            return render_template('login.html')

        try:
            profile = get_profile(user['id']) or {}
        except psycopg2.Error:
            logging.exception("Profile lookup failed for %s", user['id'])
            profile = {}
        start_session(user, profile.get('full_name') or user['username'])
        logging.info("User %s signed in as %s", user['username'], user['role'])
        return redirect(url_for('dashboard'))

    return render_template('login.html')

@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('home'))

@app.route('/dashboard')
def dashboard():
    learner = current_learner()
    if not learner:
        return redirect(url_for('login'))
    if learner.role == 'student':
        return redirect(url_for('student_dashboard'))
    return redirect(url_for('teacher_student_performance'))

@app.route('/student')
def student_dashboard():
    learner = current_learner()
    if not learner or learner.role != 'student':
        return redirect(url_for('login'))

    summary = None
    courses = []
    try:
        summary, courses = build_student_performance(learner)
    except psycopg2.Error:
        logging.exception("Failed to load performance data for %s", learner.user_id)
        flash('Failed to load performance data.', 'error')

    return render_template('student/dashboard.html', learner=learner, summary=summary, courses=courses)

@app.route('/progress')
def progress():
    learner = current_learner()
    if not learner or learner.role != 'student':
        return redirect(url_for('login'))

    attempts = []
    try:
        attempts = load_quiz_attempts(learner.user_id, completed_only=True)
    except psycopg2.Error:
        logging.exception("Failed to load progress for %s", learner.user_id)
        flash('Failed to load progress.', 'error')

    return render_template(
        'student/progress.html',
        learner=learner,
        stats=compute_progress_stats(attempts),
        history=build_attempt_history(attempts),
    )

@app.route('/subjects')
def subjects():
    learner = current_learner()
    if not learner:
        return redirect(url_for('login'))
    search = request.args.get('q', '').strip()
    rows = []
    try:
        rows = load_subjects()
    except psycopg2.Error:
        logging.exception("Failed to load subjects")
        flash('Failed to load subjects.', 'error')
    return render_template('subjects.html', learner=learner, subjects=filter_subjects(rows, search), search=search)

@app.route('/quizzes')
def quizzes():
    learner = current_learner()
    if not learner:
        return redirect(url_for('login'))
    rows = []
    try:
        rows = load_quizzes()
    except psycopg2.Error:
        logging.exception("Failed to load quizzes")
        flash('Failed to load quizzes.', 'error')
    return render_template('quizzes.html', learner=learner, quizzes=rows)

@app.route('/teacher/student-performance')
def teacher_student_performance():
    learner = current_learner()
    if not learner or learner.role not in ('teacher', 'admin'):
        return redirect(url_for('login'))

    summaries = []
    try:
        subject_ids = load_teacher_subject_ids(learner.user_id)
        students = load_students_for_subjects(subject_ids)
        summaries = summarize_students(
            students,
            load_attempts_for_students(students.keys()),
            load_enrollments_for_students(students.keys()),
            count_subjects(),
        )
    except psycopg2.Error:
        logging.exception("Failed to load student performance for teacher %s", learner.user_id)
        flash('Failed to load student performance.', 'error')

    return render_template('teacher/student_performance.html', learner=learner, summaries=summaries)

@app.route('/api/performance')
def api_performance():
    learner = current_learner()
    if not learner or learner.role != 'student':
        return jsonify({'error': 'Please log in to continue'}), 401
    try:
        summary, _courses = build_student_performance(learner)
    except psycopg2.Error:
        logging.exception("Failed to load performance data for %s", learner.user_id)
        return jsonify({'error': 'Failed to load performance data'}), 503
    return jsonify(summary)

# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
