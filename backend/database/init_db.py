"""
Create the poetry schema and run a quick integrity test.

    python -m backend.database.init_db

Applies the DDL (idempotent), then inserts a test poem, reads it back
through the JSONB columns, bumps its share counter and deletes it.
"""

import os
import sys

from psycopg2.extras import Json

# Ensure the backend module can be found
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from backend.database.db_connection import get_db

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS poetry (
    id                UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id           TEXT,
    image             JSONB NOT NULL DEFAULT '{}'::jsonb,
    image_recognition JSONB NOT NULL DEFAULT '{}'::jsonb,
    poetry            JSONB NOT NULL DEFAULT '{}'::jsonb,
    generation        JSONB NOT NULL DEFAULT '{}'::jsonb,
    feedback          JSONB NOT NULL DEFAULT '{}'::jsonb,
    share             JSONB NOT NULL DEFAULT '{"is_public": false, "share_count": 0}'::jsonb,
    metadata          JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_poetry_user_id ON poetry (user_id);
CREATE INDEX IF NOT EXISTS idx_poetry_created_at ON poetry (created_at DESC);
CREATE INDEX IF NOT EXISTS idx_poetry_style ON poetry ((poetry->>'style'));
"""


def init_db():
    """Apply SCHEMA_SQL in one transaction."""
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()


def run_smoke_test():
    print("--- Running Database Quick Test ---")
    conn = None
    cur = None
    poetry_id = None

    try:
        conn = get_db()
        cur = conn.cursor()

        # 1. Basic connection check
        cur.execute("SELECT NOW() AS now;")
        print(f"Connected! Database server time: {cur.fetchone()['now']}")

        # 2. Insert a test poem
        print("\nInserting test poem...")
        cur.execute("""
            INSERT INTO poetry (user_id, poetry, share)
            VALUES (%s, %s, %s)
            RETURNING id;
        """, (
            "init_db_test",
            Json({"content": ["山水如画意境深", "清风徐来花满林"], "title": "测试", "style": "古风", "length": 2}),
            Json({"is_public": False, "share_count": 0}),
        ))
        poetry_id = cur.fetchone()["id"]
        conn.commit()
        print(f"Inserted poem id={poetry_id}")

        # 3. Read back through the JSONB columns
        cur.execute("""
            SELECT poetry->>'title' AS title, jsonb_array_length(poetry->'content') AS lines
            FROM poetry WHERE id = %s;
        """, (poetry_id,))
        row = cur.fetchone()
        if not row or row["lines"] != 2:
            raise Exception("Failed to read back the test poem.")
        print(f"Found poem: '{row['title']}' ({row['lines']} lines)")

        # 4. Share counter increment
        cur.execute("""
            UPDATE poetry
            SET share = share || jsonb_build_object('share_count', (share->>'share_count')::int + 1)
            WHERE id = %s
            RETURNING (share->>'share_count')::int AS share_count;
        """, (poetry_id,))
        if cur.fetchone()["share_count"] != 1:
            raise Exception("Share counter did not increment.")
        conn.commit()

        print("\nDatabase test PASSED successfully!")

    except Exception as e:
        print("\nDatabase test FAILED:")
        print(f" Error: {e}")

    finally:
        # 5. Cleanup
        if conn and cur:
            print("\nCleaning up test data...")
            try:
                # A failed statement leaves the transaction aborted
                conn.rollback()
                if poetry_id:
                    cur.execute("DELETE FROM poetry WHERE id = %s;", (poetry_id,))
                conn.commit()
                print("Cleanup complete.")
            except Exception as cleanup_error:
                print(f"Cleanup FAILED. Database may contain leftover test data: {cleanup_error}")
                conn.rollback()
            finally:
                cur.close()
                conn.close()
                print("Database connection closed.")


if __name__ == "__main__":
    init_db()
    print("Schema applied.")
    run_smoke_test()
