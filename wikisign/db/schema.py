"""
Signature table schema.

Run once at install time (``python -m tools.manage init-schema``). Creating an
existing schema is a no-op.

The table enforces two of the record rules on its own:
- uq_digital_signatures_one_valid: at most one valid row per page
- digital_signatures_append_only: rows are never deleted, and the only
  permitted update is is_valid TRUE -> FALSE
"""

from typing import Optional

from ..observability import ContextLogger, get_logger

TABLE_NAME = "digital_signatures"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS digital_signatures (
    id            BIGSERIAL PRIMARY KEY,
    page_id       INTEGER      NOT NULL,
    revision_id   INTEGER      NOT NULL,
    signer_id     INTEGER      NOT NULL,
    signed_at     TIMESTAMPTZ  NOT NULL,
    content_hash  VARCHAR(64)  NOT NULL,
    is_valid      BOOLEAN      NOT NULL DEFAULT TRUE,
    remarks       TEXT
);

CREATE INDEX IF NOT EXISTS idx_digital_signatures_page_rev
    ON digital_signatures (page_id, revision_id);

CREATE UNIQUE INDEX IF NOT EXISTS uq_digital_signatures_one_valid
    ON digital_signatures (page_id)
    WHERE is_valid;

CREATE OR REPLACE FUNCTION digital_signatures_append_only() RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'DELETE' THEN
        RAISE EXCEPTION 'digital_signatures rows cannot be deleted';
    END IF;
    IF NEW.id <> OLD.id
        OR NEW.page_id <> OLD.page_id
        OR NEW.revision_id <> OLD.revision_id
        OR NEW.signer_id <> OLD.signer_id
        OR NEW.signed_at <> OLD.signed_at
        OR NEW.content_hash <> OLD.content_hash
        OR NEW.remarks IS DISTINCT FROM OLD.remarks
        OR NOT (OLD.is_valid AND NOT NEW.is_valid) THEN
        RAISE EXCEPTION 'digital_signatures rows may only be invalidated';
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS digital_signatures_append_only ON digital_signatures;
CREATE TRIGGER digital_signatures_append_only
    BEFORE UPDATE OR DELETE ON digital_signatures
    FOR EACH ROW EXECUTE FUNCTION digital_signatures_append_only();
"""


def table_exists(conn) -> bool:
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT to_regclass(%s)", (TABLE_NAME,))
        row = cursor.fetchone()
        return row is not None and row[0] is not None
    finally:
        cursor.close()


def ensure_schema(conn, logger: Optional[ContextLogger] = None) -> bool:
    """
    Create the signature table if it does not exist.

    Returns:
        True if the table was created, False if it already existed
    """
    logger = logger or get_logger(__name__)

    if table_exists(conn):
        logger.info("Signature table already exists, skipping creation", table=TABLE_NAME)
        return False

    cursor = conn.cursor()
    try:
        cursor.execute(SCHEMA_SQL)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.exception("Failed to create signature table", table=TABLE_NAME)
        raise
    finally:
        cursor.close()

    logger.info("Created signature table", table=TABLE_NAME)
    return True
