from contextlib import contextmanager
import psycopg
from psycopg.rows import dict_row
from .settings import DATABASE_URL

SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id                  TEXT PRIMARY KEY,
    buyer_id            TEXT NOT NULL,
    seller_id           TEXT NOT NULL,
    buyer_email         TEXT NOT NULL DEFAULT '',
    seller_email        TEXT NOT NULL DEFAULT '',
    item_ids            JSONB NOT NULL DEFAULT '[]',
    total_amount_cents  INTEGER NOT NULL CHECK (total_amount_cents >= 0),
    delivery_fee_cents  INTEGER NOT NULL DEFAULT 0,
    carrier_id          TEXT,
    service_name        TEXT,
    payment_reference   TEXT UNIQUE,
    seller_subaccount   TEXT,
    platform_fee_cents  INTEGER NOT NULL DEFAULT 0,
    seller_amount_cents INTEGER NOT NULL DEFAULT 0,
    status              TEXT NOT NULL DEFAULT 'pending_commit'
                        CHECK (status IN ('pending_commit', 'committed', 'declined', 'refunded')),
    commit_deadline     TIMESTAMPTZ NOT NULL,
    decline_reason      TEXT,
    declined_at         TIMESTAMPTZ,
    committed_at        TIMESTAMPTZ,
    refund_status       TEXT CHECK (refund_status IN ('pending', 'processed', 'failed')),
    refund_reference    TEXT,
    reminder_sent_at    TIMESTAMPTZ,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_orders_pending_deadline
    ON orders (commit_deadline) WHERE status = 'pending_commit';

CREATE TABLE IF NOT EXISTS refund_transactions (
    id                    TEXT PRIMARY KEY,
    order_id              TEXT NOT NULL UNIQUE REFERENCES orders(id) ON DELETE CASCADE,
    transaction_reference TEXT NOT NULL,
    refund_reference      TEXT,
    amount_cents          INTEGER NOT NULL,
    reason                TEXT NOT NULL,
    status                TEXT NOT NULL DEFAULT 'pending'
                          CHECK (status IN ('pending', 'processed', 'failed')),
    gateway_response      JSONB NOT NULL DEFAULT '{}',
    created_at            TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at            TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_refund_transactions_refund_reference
    ON refund_transactions (refund_reference);
"""


@contextmanager
def get_conn(url: str = DATABASE_URL):
    conn = psycopg.connect(url, row_factory=dict_row)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(url: str = DATABASE_URL):
    with get_conn(url) as conn:
        conn.execute(SCHEMA)
