#!/usr/bin/env python3
"""Create the reconciler's tables, dedup constraints and atomic counter functions."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. invoices (owned by billing; reconciler only moves status)
CREATE TABLE IF NOT EXISTS invoices (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'unpaid' CHECK (status IN ('unpaid', 'paid', 'refunded')),
    total NUMERIC(12, 2) NOT NULL DEFAULT 0,
    currency VARCHAR(3) NOT NULL DEFAULT 'GBP',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_invoices_user_id ON invoices(user_id);

-- 2. payment_requests (correlation record: transaction reference -> invoice)
CREATE TABLE IF NOT EXISTS payment_requests (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id UUID REFERENCES invoices(id) ON DELETE SET NULL,
    user_id UUID,
    amount NUMERIC(12, 2),
    currency VARCHAR(3) NOT NULL DEFAULT 'GBP',
    status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed', 'failed')),
    provider_reference VARCHAR(100) NOT NULL UNIQUE,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_payment_requests_invoice_id ON payment_requests(invoice_id);

-- 3. payment_request_events
CREATE TABLE IF NOT EXISTS payment_request_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    request_id UUID NOT NULL REFERENCES payment_requests(id) ON DELETE CASCADE,
    event_type VARCHAR(50) NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 4. receipts
CREATE TABLE IF NOT EXISTS receipts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id UUID NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    user_id UUID,
    amount NUMERIC(12, 2) NOT NULL,
    method VARCHAR(30) NOT NULL,
    reference VARCHAR(120) NOT NULL UNIQUE,
    paid_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 5. payment_attempts (insert-only)
CREATE TABLE IF NOT EXISTS payment_attempts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id UUID REFERENCES invoices(id) ON DELETE SET NULL,
    user_id UUID,
    amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    status VARCHAR(20) NOT NULL CHECK (status IN ('failed', 'succeeded')),
    provider VARCHAR(50) NOT NULL,
    provider_ref VARCHAR(150) NOT NULL UNIQUE,
    reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 6. credit_notes (insert-only)
CREATE TABLE IF NOT EXISTS credit_notes (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id UUID NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    user_id UUID,
    amount NUMERIC(12, 2) NOT NULL,
    reason TEXT NOT NULL,
    provider_ref VARCHAR(150) NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 7. guest_orders
CREATE TABLE IF NOT EXISTS guest_orders (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    order_number VARCHAR(50) NOT NULL UNIQUE,
    email VARCHAR(255) NOT NULL,
    user_id UUID,
    linked_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 8. campaigns / campaign_recipients / communications_log (open tracking)
CREATE TABLE IF NOT EXISTS campaigns (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(255) NOT NULL,
    opened_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS campaign_recipients (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    campaign_id UUID NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
    email VARCHAR(255) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'sent',
    opened_at TIMESTAMPTZ,
    open_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_campaign_recipients_campaign_id ON campaign_recipients(campaign_id);

CREATE TABLE IF NOT EXISTS communications_log (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID,
    channel VARCHAR(20) NOT NULL DEFAULT 'email',
    subject TEXT,
    opened_at TIMESTAMPTZ,
    open_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 9. audit_logs (append-only)
CREATE TABLE IF NOT EXISTS audit_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    action VARCHAR(100) NOT NULL,
    entity VARCHAR(50) NOT NULL,
    entity_id VARCHAR(150),
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_audit_logs_action ON audit_logs(action);

-- 10. event_ledger (idempotency)
CREATE TABLE IF NOT EXISTS event_ledger (
    natural_key VARCHAR(300) PRIMARY KEY,
    channel VARCHAR(30) NOT NULL,
    event_kind VARCHAR(100),
    event_id VARCHAR(150),
    status VARCHAR(20) NOT NULL CHECK (status IN ('processing', 'applied', 'failed')),
    reserved_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    first_applied_at TIMESTAMPTZ,
    outcome_summary JSONB,
    last_error TEXT,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_event_ledger_status ON event_ledger(status, reserved_at);

-- 11. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(100),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

FUNCTIONS = """
CREATE OR REPLACE FUNCTION increment_open_count(p_table TEXT, p_id UUID)
RETURNS INTEGER
LANGUAGE plpgsql
AS $$
DECLARE
    new_count INTEGER;
BEGIN
    IF p_table NOT IN ('campaign_recipients', 'communications_log') THEN
        RAISE EXCEPTION 'table % is not trackable', p_table;
    END IF;
    EXECUTE format(
        'UPDATE %I SET open_count = open_count + 1 WHERE id = $1 RETURNING open_count',
        p_table
    ) INTO new_count USING p_id;
    RETURN new_count;
END;
$$;

CREATE OR REPLACE FUNCTION increment_campaign_opened_count(p_campaign_id UUID)
RETURNS INTEGER
LANGUAGE sql
AS $$
    UPDATE campaigns SET opened_count = opened_count + 1 WHERE id = p_campaign_id RETURNING opened_count;
$$;
"""

def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating counter functions...")
    cur.execute(FUNCTIONS)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute(
        "SELECT routine_name FROM information_schema.routines "
        "WHERE routine_schema = 'public' AND routine_name LIKE 'increment_%' ORDER BY routine_name;"
    )
    functions = cur.fetchall()
    print(f"Functions: {[f[0] for f in functions]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
