import logging

from sqlalchemy import text

from paygate.database import engine

logger = logging.getLogger(__name__)


def _get_table_columns(conn, table_name: str):
    if engine.dialect.name == "sqlite":
        result = conn.execute(text(f"PRAGMA table_info({table_name})"))
        return {row[1] for row in result}

    result = conn.execute(
        text(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = :table_name
            """
        ),
        {"table_name": table_name},
    )
    return {row[0] for row in result}


def ensure_user_subscription_columns():
    """
    Patch users table schema in-place for databases created before subscriptions existed.
    """
    with engine.begin() as conn:
        columns = _get_table_columns(conn, "users")

        if "subscription_status" not in columns:
            conn.execute(
                text("ALTER TABLE users ADD COLUMN subscription_status VARCHAR NOT NULL DEFAULT 'free'")
            )
            logger.info("Added users.subscription_status column")

        if "subscription_end_date" not in columns:
            conn.execute(text("ALTER TABLE users ADD COLUMN subscription_end_date TIMESTAMP"))
            logger.info("Added users.subscription_end_date column")

        if "is_admin" not in columns:
            conn.execute(text("ALTER TABLE users ADD COLUMN is_admin BOOLEAN NOT NULL DEFAULT FALSE"))
            logger.info("Added users.is_admin column")
