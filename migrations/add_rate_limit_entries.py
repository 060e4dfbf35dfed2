"""
Create the rate_limit_entries table

Columns:
- identifier VARCHAR(255) - client IP or user ID
- endpoint VARCHAR(100) - limit category (login, admin, general)
- count INTEGER
- reset_time TIMESTAMP
- first_attempt_time TIMESTAMP
- blocked BOOLEAN
- created_at / updated_at TIMESTAMP

Unique on (identifier, endpoint), indexed on identifier and reset_time.
"""

# Ensure this script can be run directly from the repo root
import sys
from pathlib import Path

CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_DIR = CURRENT_DIR.parent
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

from sqlalchemy import text

from backoffice.database import engine


def _id_column() -> str:
    if engine.dialect.name == "postgresql":
        return "id SERIAL PRIMARY KEY"
    return "id INTEGER PRIMARY KEY AUTOINCREMENT"


def upgrade():
    with engine.connect() as conn:
        conn.execute(
            text(
                f"""
                CREATE TABLE IF NOT EXISTS rate_limit_entries (
                    {_id_column()},
                    identifier VARCHAR(255) NOT NULL,
                    endpoint VARCHAR(100) NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    reset_time TIMESTAMP NOT NULL,
                    first_attempt_time TIMESTAMP,
                    blocked BOOLEAN DEFAULT FALSE,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_rate_limit_identifier_endpoint UNIQUE (identifier, endpoint)
                );
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_rate_limit_entries_identifier
                ON rate_limit_entries (identifier);
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_rate_limit_entries_reset_time
                ON rate_limit_entries (reset_time);
                """
            )
        )
        conn.commit()
        print("Migration add_rate_limit_entries applied successfully")


def downgrade():
    with engine.connect() as conn:
        conn.execute(text("DROP INDEX IF EXISTS ix_rate_limit_entries_reset_time"))
        conn.execute(text("DROP INDEX IF EXISTS ix_rate_limit_entries_identifier"))
        conn.execute(text("DROP TABLE IF EXISTS rate_limit_entries"))
        conn.commit()
        print("Migration add_rate_limit_entries rolled back")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage rate_limit_entries migration")
    parser.add_argument("--down", action="store_true", help="Rollback the migration")
    args = parser.parse_args()

    if args.down:
        downgrade()
    else:
        upgrade()
