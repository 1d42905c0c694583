from dotenv import load_dotenv
import os
import psycopg2

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL not found. Set it in .env")

GRADE_VALUES = [str(g) for g in range(1, 10)] + ["Graduated"]
EXAM_TYPES = ["exam1", "exam2"]

def db_execute(cursor, query):
    """
    Executes a SQL query safely using the provided cursor.
    Rolls back if there is an error.
    """
    try:
        cursor.execute(query)
    except Exception as e:
        cursor.connection.rollback()
        print("SQL ERROR:", e)
        raise

def init_db():
    """
    Creates the users, learners and marks tables in PostgreSQL if they don't exist.
    """
    grade_values = ", ".join(f"'{g}'" for g in GRADE_VALUES)
    exam_values = ", ".join(f"'{e}'" for e in EXAM_TYPES)
    with psycopg2.connect(DATABASE_URL) as conn:
        with conn.cursor() as cursor:
            db_execute(cursor, '''
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            db_execute(cursor, f'''
                CREATE TABLE IF NOT EXISTS learners (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    gender TEXT,
                    adm_number TEXT UNIQUE NOT NULL,
                    grade TEXT NOT NULL CHECK (grade IN ({grade_values})),
                    age INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            # One mark per learner, exam and subject; uploads upsert on this key.
            db_execute(cursor, f'''
                CREATE TABLE IF NOT EXISTS marks (
                    id SERIAL PRIMARY KEY,
                    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
                    exam_type TEXT NOT NULL CHECK (exam_type IN ({exam_values})),
                    subject TEXT NOT NULL,
                    mark INTEGER NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_marks_learner_exam_subject UNIQUE (learner_id, exam_type, subject)
                )
            ''')
            conn.commit()
            print("✅ Database initialized successfully.")

def show_counts():
    """Print row counts per table"""
    with psycopg2.connect(DATABASE_URL) as conn:
        with conn.cursor() as cursor:
            for table in ("users", "learners", "marks"):
                cursor.execute(f"SELECT COUNT(*) FROM {table};")
                print(f"{table}: {cursor.fetchone()[0]}")

if __name__ == "__main__":
    init_db()
    show_counts()
