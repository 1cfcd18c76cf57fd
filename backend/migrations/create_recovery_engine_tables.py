"""
Migration: Create Recovery & Retention Engine tables.

Creates:
1. accounts                 - owners of cases, ledger entries, sessions, configs
2. subscription_snapshots   - latest trusted subscription state per account
3. risk_signal_events       - append-only billing signal log
4. risk_snapshots           - one upserted score per account
5. recovery_cases           - time-boxed failed-payment incidents
6. recovery_actions         - append-only operator action log
7. ledger_entries           - append-only revenue attribution
8. processed_events         - exactly-once webhook markers
9. offer_configs            - versioned cancel-flow configuration
10. cancel_sessions         - token-addressed widget sessions
11. saved_customers         - customers retained by an accepted offer

Integrity lives in the schema:
- at most one open case per (owner_account_id, invoice_reference) (partial unique index)
- ledger: source_event_id unique, (recovery_case_id, source_event_id) unique
- non-negative amounts (CHECK constraints)

Idempotent: existing tables are skipped.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/churnshield"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


# (table name, CREATE TABLE, follow-up index statements), in dependency order
TABLES = [
    ("accounts", """
        CREATE TABLE accounts (
            id VARCHAR(36) PRIMARY KEY,
            email VARCHAR(255) NOT NULL UNIQUE,
            role VARCHAR(32) NOT NULL DEFAULT 'user',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX ix_accounts_email ON accounts(email)",
    ]),
    ("subscription_snapshots", """
        CREATE TABLE subscription_snapshots (
            id VARCHAR(36) PRIMARY KEY,
            account_id VARCHAR(36) NOT NULL UNIQUE REFERENCES accounts(id) ON DELETE CASCADE,
            provider_subscription_id VARCHAR(255),
            status VARCHAR(32) NOT NULL,
            cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
            current_period_end TIMESTAMP,
            trial_end TIMESTAMP,
            source_updated_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, []),
    ("risk_signal_events", """
        CREATE TABLE risk_signal_events (
            id VARCHAR(36) PRIMARY KEY,
            account_id VARCHAR(36) NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            event_type VARCHAR(32) NOT NULL,
            severity INTEGER NOT NULL CHECK (severity BETWEEN 0 AND 100),
            occurred_at TIMESTAMP NOT NULL,
            source_event_id VARCHAR(255),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX idx_risk_signal_account_time ON risk_signal_events(account_id, occurred_at)",
    ]),
    ("risk_snapshots", """
        CREATE TABLE risk_snapshots (
            account_id VARCHAR(36) PRIMARY KEY REFERENCES accounts(id) ON DELETE CASCADE,
            score INTEGER NOT NULL CHECK (score BETWEEN 0 AND 100),
            top_reasons JSON NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    """, []),
    ("recovery_cases", """
        CREATE TABLE recovery_cases (
            id VARCHAR(36) PRIMARY KEY,
            owner_account_id VARCHAR(36) NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            customer_reference VARCHAR(255) NOT NULL,
            invoice_reference VARCHAR(255),
            amount_at_risk NUMERIC(12, 2) NOT NULL CHECK (amount_at_risk >= 0),
            currency VARCHAR(3) NOT NULL DEFAULT 'USD',
            churn_reason VARCHAR(32) NOT NULL DEFAULT 'unknown_failure',
            status VARCHAR(32) NOT NULL DEFAULT 'open',
            opened_at TIMESTAMP NOT NULL,
            deadline_at TIMESTAMP NOT NULL,
            first_action_at TIMESTAMP,
            resolved_at TIMESTAMP,
            messages_sent INTEGER NOT NULL DEFAULT 0 CHECK (messages_sent >= 0),
            last_message_at TIMESTAMP,
            source_event_id VARCHAR(255),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX ix_recovery_cases_owner_account_id ON recovery_cases(owner_account_id)",
        "CREATE INDEX idx_recovery_case_status_deadline ON recovery_cases(status, deadline_at)",
        """
        CREATE UNIQUE INDEX uq_recovery_case_open_invoice
            ON recovery_cases(owner_account_id, invoice_reference)
            WHERE status = 'open'
        """,
    ]),
    ("recovery_actions", """
        CREATE TABLE recovery_actions (
            id VARCHAR(36) PRIMARY KEY,
            recovery_case_id VARCHAR(36) NOT NULL REFERENCES recovery_cases(id) ON DELETE CASCADE,
            action_type VARCHAR(32) NOT NULL,
            note TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX ix_recovery_actions_recovery_case_id ON recovery_actions(recovery_case_id)",
    ]),
    ("ledger_entries", """
        CREATE TABLE ledger_entries (
            id VARCHAR(36) PRIMARY KEY,
            recovery_case_id VARCHAR(36) NOT NULL REFERENCES recovery_cases(id),
            owner_account_id VARCHAR(36) NOT NULL REFERENCES accounts(id),
            invoice_reference VARCHAR(255) NOT NULL,
            amount_recovered NUMERIC(12, 2) NOT NULL CHECK (amount_recovered >= 0),
            currency VARCHAR(3) NOT NULL,
            source_event_id VARCHAR(255) NOT NULL UNIQUE,
            recovered_at TIMESTAMP NOT NULL,
            notes TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT uq_ledger_case_source_event UNIQUE (recovery_case_id, source_event_id)
        )
    """, [
        "CREATE INDEX ix_ledger_entries_recovery_case_id ON ledger_entries(recovery_case_id)",
        "CREATE INDEX ix_ledger_entries_owner_account_id ON ledger_entries(owner_account_id)",
    ]),
    ("processed_events", """
        CREATE TABLE processed_events (
            event_id VARCHAR(255) PRIMARY KEY,
            event_type VARCHAR(64) NOT NULL,
            account_id VARCHAR(36),
            invoice_reference VARCHAR(255),
            occurred_at TIMESTAMP,
            outcome JSON,
            processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX idx_processed_event_invoice ON processed_events(account_id, invoice_reference)",
    ]),
    ("offer_configs", """
        CREATE TABLE offer_configs (
            id VARCHAR(36) PRIMARY KEY,
            account_id VARCHAR(36) NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            version INTEGER NOT NULL,
            survey_options JSON NOT NULL,
            offer_settings JSON NOT NULL,
            branding JSON NOT NULL,
            widget_settings JSON NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT uq_offer_config_version UNIQUE (account_id, version)
        )
    """, [
        "CREATE INDEX ix_offer_configs_account_id ON offer_configs(account_id)",
    ]),
    ("cancel_sessions", """
        CREATE TABLE cancel_sessions (
            id VARCHAR(64) PRIMARY KEY,
            account_id VARCHAR(36) NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            customer_reference VARCHAR(255),
            subscription_reference VARCHAR(255),
            config_version INTEGER NOT NULL,
            status VARCHAR(32) NOT NULL DEFAULT 'survey_pending',
            exit_reason VARCHAR(255),
            custom_feedback TEXT,
            offer_type_presented VARCHAR(32),
            offer_accepted BOOLEAN,
            completion_action VARCHAR(32),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            resolved_at TIMESTAMP
        )
    """, [
        "CREATE INDEX ix_cancel_sessions_account_id ON cancel_sessions(account_id)",
    ]),
    ("saved_customers", """
        CREATE TABLE saved_customers (
            id VARCHAR(36) PRIMARY KEY,
            cancel_session_id VARCHAR(64) NOT NULL UNIQUE REFERENCES cancel_sessions(id),
            account_id VARCHAR(36) NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            customer_reference VARCHAR(255),
            subscription_reference VARCHAR(255),
            save_type VARCHAR(32) NOT NULL,
            discount_percentage INTEGER,
            discount_duration_months INTEGER,
            pause_months INTEGER,
            offer_applied BOOLEAN NOT NULL DEFAULT FALSE,
            apply_error TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX ix_saved_customers_account_id ON saved_customers(account_id)",
    ]),
]


def run_migration():
    """Create all recovery engine tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        for table_name, create_sql, index_statements in TABLES:
            if table_exists(conn, table_name):
                print(f"{table_name} table already exists")
                continue

            conn.execute(text(create_sql))
            for statement in index_statements:
                conn.execute(text(statement))
            print(f"Created {table_name} table")

        conn.commit()
        print("\nRecovery engine migration complete!")


if __name__ == "__main__":
    run_migration()
