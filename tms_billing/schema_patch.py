from sqlalchemy import text
from sqlalchemy.engine import Engine

from tms_billing.database import engine as default_engine

AUTOPAY_CANCELLATION_COLUMNS = {
    "autopay_cancelled_at": "TIMESTAMP",
    "autopay_cancellation_reason": "VARCHAR",
    "autopay_cancelled_by": "VARCHAR",
}


def _get_table_columns(conn, table_name: str, dialect_name: str):
    if dialect_name == "sqlite":
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


def ensure_user_razorpay_customer_column(engine: Engine = default_engine):
    """
    Older users tables predate webhook customer tracking.
    """
    with engine.begin() as conn:
        columns = _get_table_columns(conn, "users", engine.dialect.name)
        if "razorpay_customer_id" not in columns:
            conn.execute(text("ALTER TABLE users ADD COLUMN razorpay_customer_id VARCHAR"))


def ensure_autopay_cancellation_columns(engine: Engine = default_engine):
    """
    Patch user_subscriptions in-place for environments without full migrations.
    """
    with engine.begin() as conn:
        columns = _get_table_columns(conn, "user_subscriptions", engine.dialect.name)
        for column_name, column_type in AUTOPAY_CANCELLATION_COLUMNS.items():
            if column_name not in columns:
                conn.execute(text(f"ALTER TABLE user_subscriptions ADD COLUMN {column_name} {column_type}"))


def ensure_payment_transaction_unique_index(engine: Engine = default_engine):
    # One ledger row per gateway charge.
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_payment_transactions_gateway_payment "
                "ON payment_transactions (payment_gateway, gateway_payment_id)"
            )
        )


def apply_schema_patches(engine: Engine = default_engine):
    ensure_user_razorpay_customer_column(engine)
    ensure_autopay_cancellation_columns(engine)
    ensure_payment_transaction_unique_index(engine)
