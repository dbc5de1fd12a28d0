"""
Persistence for generated poems.

Each poem is one row of the `poetry` table; the nested parts of the record
(image, recognition, poem, generation, feedback, share, metadata) live in
JSONB columns. All functions open their own connection through get_db() and
let database errors propagate to the caller.
"""

import logging
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from backend.database.db_connection import get_db

VALID_SORTS = ("createdAt", "popular", "rating")

SORT_SQL = {
    "popular": "(share->>'share_count')::int DESC NULLS LAST, created_at DESC",
    "rating": "(feedback->>'rating')::numeric DESC NULLS LAST, created_at DESC",
    "createdAt": "created_at DESC",
}

SHORT_CONTENT_LENGTH = 100


def _where(query: Dict[str, Any]):
    """Build a WHERE clause for the supported filters (style, userId)."""
    conditions = []
    params: List[Any] = []
    if query.get("style"):
        conditions.append("poetry->>'style' = %s")
        params.append(query["style"])
    if query.get("userId"):
        conditions.append("user_id = %s")
        params.append(query["userId"])
    clause = (" WHERE " + " AND ".join(conditions)) if conditions else ""
    return clause, params


def create_poetry(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Insert a new record and return it with its database-assigned id.

    Args:
        data (dict): camelCase record parts (userId, image, imageRecognition,
                     poetry, generation, feedback, share, metadata).
    """
    sql = """
        INSERT INTO poetry (
            user_id, image, image_recognition, poetry,
            generation, feedback, share, metadata
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING *;
    """
    poem = dict(data.get("poetry") or {})
    poem["length"] = len(poem.get("content") or [])

    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, (
                data.get("userId") or None,
                Json(data.get("image") or {}),
                Json(data.get("imageRecognition") or {}),
                Json(poem),
                Json(data.get("generation") or {}),
                Json(data.get("feedback") or {}),
                Json(data.get("share") or {"is_public": False, "share_count": 0}),
                Json(data.get("metadata") or {}),
            ))
            row = cur.fetchone()
            conn.commit()
    return dict(row)


def find_by_id(poetry_id: str) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM poetry WHERE id = %s;", (poetry_id,))
            row = cur.fetchone()
    return dict(row) if row else None


def find_poetry(query: Optional[Dict[str, Any]] = None, sort: str = "createdAt", limit: int = 10, offset: int = 0) -> List[Dict[str, Any]]:
    """Filtered, sorted, paginated listing."""
    clause, params = _where(query or {})
    order = SORT_SQL.get(sort, SORT_SQL["createdAt"])
    sql = f"SELECT * FROM poetry{clause} ORDER BY {order} LIMIT %s OFFSET %s;"
    params.extend([limit, offset])

    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return [dict(r) for r in cur.fetchall()]


def count_poetry(query: Optional[Dict[str, Any]] = None) -> int:
    clause, params = _where(query or {})
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS total FROM poetry{clause};", params)
            row = cur.fetchone()
    return int(row["total"]) if row else 0


def find_popular(limit: int = 10) -> List[Dict[str, Any]]:
    """Public poems ordered by share count, then rating."""
    sql = """
        SELECT * FROM poetry
        WHERE (share->>'is_public')::boolean IS TRUE
        ORDER BY (share->>'share_count')::int DESC NULLS LAST,
                 (feedback->>'rating')::numeric DESC NULLS LAST
        LIMIT %s;
    """
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, (limit,))
            return [dict(r) for r in cur.fetchall()]


def get_stats() -> Dict[str, Any]:
    """Totals across all poems: count, shares, average rating, styles used."""
    totals_sql = """
        SELECT
            COUNT(*) AS total_poems,
            COALESCE(SUM((share->>'share_count')::int), 0) AS total_shares,
            AVG((feedback->>'rating')::numeric) AS avg_rating
        FROM poetry;
    """
    styles_sql = """
        SELECT DISTINCT poetry->>'style' AS style
        FROM poetry
        WHERE poetry->>'style' IS NOT NULL
        ORDER BY style;
    """
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(totals_sql)
            totals = cur.fetchone() or {}
            cur.execute(styles_sql)
            styles = [r["style"] for r in cur.fetchall()]

    avg_rating = totals.get("avg_rating")
    return {
        "totalPoems": int(totals.get("total_poems") or 0),
        "totalShares": int(totals.get("total_shares") or 0),
        "avgRating": round(float(avg_rating), 1) if avg_rating is not None else 0,
        "styles": styles,
    }


def update_feedback(poetry_id: str, feedback: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Merge the given feedback keys into the stored feedback object."""
    sql = """
        UPDATE poetry
        SET feedback = COALESCE(feedback, '{}'::jsonb) || %s::jsonb,
            updated_at = NOW()
        WHERE id = %s
        RETURNING *;
    """
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, (Json(feedback), poetry_id))
            row = cur.fetchone()
            conn.commit()
    return dict(row) if row else None


def increment_share_count(poetry_id: str, is_public: bool, share_url: str) -> Optional[Dict[str, Any]]:
    """
    Mark the poem shared and bump share_count by one.

    The increment is computed inside the UPDATE so concurrent shares on the
    same row do not lose counts.
    """
    sql = """
        UPDATE poetry
        SET share = COALESCE(share, '{}'::jsonb) || jsonb_build_object(
                'is_public', %s::boolean,
                'shareUrl', %s::text,
                'share_count', COALESCE((share->>'share_count')::int, 0) + 1
            ),
            updated_at = NOW()
        WHERE id = %s
        RETURNING *;
    """
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, (is_public, share_url, poetry_id))
            row = cur.fetchone()
            conn.commit()
    if row:
        logging.info(f"Poem {poetry_id} shared, share_count={row['share'].get('share_count')}")
    return dict(row) if row else None


def delete_by_id(poetry_id: str) -> bool:
    with get_db() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM poetry WHERE id = %s;", (poetry_id,))
            deleted = cur.rowcount > 0
            conn.commit()
    return deleted


def to_json(row: Dict[str, Any]) -> Dict[str, Any]:
    """API representation of a row (camelCase keys plus virtual fields)."""
    image = row.get("image") or {}
    poem = row.get("poetry") or {}
    content = poem.get("content") or []
    text = "\n".join(content)

    if image.get("url"):
        image_url = image["url"]
    elif image.get("filename"):
        image_url = f"/uploads/{image['filename']}"
    else:
        image_url = None

    created_at = row.get("created_at")
    updated_at = row.get("updated_at")
    return {
        "id": str(row.get("id")) if row.get("id") is not None else None,
        "userId": row.get("user_id"),
        "image": image,
        "imageRecognition": row.get("image_recognition") or {},
        "poetry": poem,
        "generation": row.get("generation") or {},
        "feedback": row.get("feedback") or {},
        "share": row.get("share") or {},
        "metadata": row.get("metadata") or {},
        "createdAt": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        "updatedAt": updated_at.isoformat() if hasattr(updated_at, "isoformat") else updated_at,
        "imageUrl": image_url,
        "shortContent": text[:SHORT_CONTENT_LENGTH] + "..." if len(text) > SHORT_CONTENT_LENGTH else text,
    }
