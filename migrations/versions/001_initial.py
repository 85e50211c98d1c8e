"""Initial schema for the E-shuri learning platform.

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create tables, indexes and change-notification triggers."""
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')

    # Accounts with roles: admin, teacher, student
    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'student',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS profiles (
                    id UUID PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                    full_name TEXT NOT NULL,
                    class_year TEXT,
                    level TEXT,
                    language TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS subjects (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    name TEXT NOT NULL,
                    description TEXT,
                    level TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS teacher_subjects (
                    teacher_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    subject_id UUID NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    PRIMARY KEY (teacher_id, subject_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS student_courses (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    student_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    subject_id UUID NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    progress INTEGER DEFAULT 0,
                    enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(student_id, subject_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS quizzes (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    subject_id UUID NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    teacher_id UUID NOT NULL REFERENCES profiles(id),
                    title TEXT NOT NULL,
                    description TEXT,
                    quiz_type TEXT DEFAULT 'quiz',
                    time_limit_minutes INTEGER,
                    deadline TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # duration_seconds is always stored in seconds
    op.execute('''CREATE TABLE IF NOT EXISTS quiz_attempts (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    quiz_id UUID NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
                    student_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    score NUMERIC DEFAULT 0,
                    max_score NUMERIC NOT NULL,
                    duration_seconds INTEGER,
                    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    completed_at TIMESTAMP
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_quiz_attempts_student ON quiz_attempts(student_id, completed_at)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_student_courses_subject ON student_courses(subject_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_quizzes_subject ON quizzes(subject_id)')

    # Publish the affected student on change so dashboards can refresh
    for table, channel in (('quiz_attempts', 'quiz_attempts_changed'),
                           ('student_courses', 'student_courses_changed')):
        op.execute(f'''CREATE OR REPLACE FUNCTION notify_{channel}() RETURNS trigger AS $$
                       BEGIN
                         IF TG_OP = 'DELETE' THEN
                           PERFORM pg_notify('{channel}', OLD.student_id::text);
                           RETURN OLD;
                         END IF;
                         PERFORM pg_notify('{channel}', NEW.student_id::text);
                         RETURN NEW;
                       END;
                       $$ LANGUAGE plpgsql''')
        op.execute(f'DROP TRIGGER IF EXISTS trg_notify_{channel} ON {table}')
        op.execute(f'''CREATE TRIGGER trg_notify_{channel}
                       AFTER INSERT OR UPDATE OR DELETE ON {table}
                       FOR EACH ROW EXECUTE FUNCTION notify_{channel}()''')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS quiz_attempts CASCADE')
    op.execute('DROP TABLE IF EXISTS quizzes CASCADE')
    op.execute('DROP TABLE IF EXISTS student_courses CASCADE')
    op.execute('DROP TABLE IF EXISTS teacher_subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS profiles CASCADE')
    op.execute('DROP TABLE IF EXISTS users CASCADE')
    op.execute('DROP FUNCTION IF EXISTS notify_quiz_attempts_changed() CASCADE')
    op.execute('DROP FUNCTION IF EXISTS notify_student_courses_changed() CASCADE')
