"""Initial schema for the report card system.

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create users, learners and marks with their constraints and indexes."""

    # Teacher accounts; the roster is created by the app at startup.
    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Grade is text so a learner promoted past grade 9 can hold 'Graduated'.
    op.execute('''CREATE TABLE IF NOT EXISTS learners (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    gender TEXT,
                    adm_number TEXT UNIQUE NOT NULL,
                    grade TEXT NOT NULL CHECK (grade IN ('1', '2', '3', '4', '5', '6', '7', '8', '9', 'Graduated')),
                    age INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS marks (
                    id SERIAL PRIMARY KEY,
                    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
                    exam_type TEXT NOT NULL CHECK (exam_type IN ('exam1', 'exam2')),
                    subject TEXT NOT NULL,
                    mark INTEGER NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_marks_learner_exam_subject UNIQUE (learner_id, exam_type, subject)
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_users_username_lower ON users(LOWER(username))')
    op.execute('CREATE INDEX IF NOT EXISTS idx_learners_grade ON learners(grade)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_learners_adm_grade ON learners(adm_number, grade)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_marks_learner ON marks(learner_id)')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS marks CASCADE')
    op.execute('DROP TABLE IF EXISTS learners CASCADE')
    op.execute('DROP TABLE IF EXISTS users CASCADE')
