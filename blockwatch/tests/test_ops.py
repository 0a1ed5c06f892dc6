"""
Operational tooling tests: incident CSV import, incident lookup and the
schema migration runner.
"""

import sqlite3

import pytest

from blockwatch.db.database import Database
from blockwatch.db.incidents import find_incidents, normalize_key
from blockwatch.migrations.run_migrations import main as migrate_main
from blockwatch.migrations.run_migrations import (
    discard_legacy_reset_tokens,
    migrate,
    set_aside_legacy_usage,
)
from blockwatch.ops.import_incidents import import_csv, main as import_main, read_rows
from blockwatch.server.accounts import AccountStore
from blockwatch.server.errors import StorageError
from blockwatch.server.gate import EntitlementGate
from blockwatch.server.models import Deny
from blockwatch.server.usage import UsageLedger

CSV_TEXT = """postal_code,block,location,date_reported,incident_summary,source_url
60601,100 N STATE ST,SIDEWALK,2024-03-01,Theft reported,https://src.test/1
60601 ,200 N STATE ST,ALLEY,2024-05-09,Vandalism,https://src.test/2
,NO POSTAL,STREET,2024-02-02,Dropped,https://src.test/x
60602,1 E WACKER DR,LOBBY,2024-01-15,Trespass,https://src.test/3
"""


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "incidents.csv"
    path.write_text(CSV_TEXT)
    return path


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------

class TestImport:

    def test_read_rows_skips_empty_keys(self):
        rows, skipped = read_rows(CSV_TEXT.splitlines(keepends=True))
        assert skipped == 1
        assert [r[0] for r in rows] == ["60601", "60601", "60602"]

    def test_missing_column(self):
        with pytest.raises(ValueError):
            read_rows(["zip,block\n", "60601,x\n"])

    def test_import_then_lookup(self, db, csv_file):
        assert import_csv(db, csv_file) == 3
        results = find_incidents(db, "60601")
        assert [r["date_reported"] for r in results] == ["2024-05-09", "2024-03-01"]
        assert find_incidents(db, "00000") == []

    def test_import_replaces(self, db, csv_file, tmp_path):
        import_csv(db, csv_file)
        smaller = tmp_path / "smaller.csv"
        smaller.write_text("postal_code,block\n70001,ONE\n")
        import_csv(db, smaller)
        assert find_incidents(db, "60601") == []
        assert len(find_incidents(db, "70001")) == 1

    def test_cli(self, tmp_path, csv_file):
        db_path = tmp_path / "cli.db"
        assert import_main([str(csv_file), "--db", str(db_path)]) == 0
        assert len(find_incidents(Database(db_path), "60602")) == 1

    def test_cli_missing_file(self, tmp_path):
        assert import_main([str(tmp_path / "nope.csv"), "--db", str(tmp_path / "x.db")]) == 1

    def test_normalize_key(self):
        assert normalize_key("  606\t01 ") == "606 01"
        assert normalize_key(None) == ""


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def _legacy_db(path, emails):
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, email TEXT UNIQUE NOT NULL, "
        "password_hash TEXT NOT NULL, subscription_tier TEXT NOT NULL DEFAULT 'free')"
    )
    conn.executemany("INSERT INTO users (email, password_hash) VALUES (?, 'x')", [(e,) for e in emails])
    conn.commit()
    conn.close()


class TestMigrations:

    def test_fresh_database(self, tmp_path):
        path = tmp_path / "fresh.db"
        migrate(str(path))
        with Database(path).connection() as conn:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"users", "api_usage", "password_reset_tokens", "incidents"} <= tables

    def test_legacy_users_evolved(self, tmp_path):
        path = tmp_path / "legacy.db"
        _legacy_db(path, [" Old@Example.com"])
        migrate(str(path))
        with Database(path).connection() as conn:
            cols = {r[1] for r in conn.execute("PRAGMA table_info(users)")}
            row = conn.execute("SELECT email, created_at FROM users").fetchone()
        assert {"stripe_customer_id", "stripe_subscription_id", "created_at", "updated_at"} <= cols
        assert row["email"] == "old@example.com"
        assert row["created_at"]

    def test_idempotent(self, tmp_path):
        path = tmp_path / "twice.db"
        migrate(str(path))
        migrate(str(path))

    def test_refuses_colliding_emails(self, tmp_path):
        path = tmp_path / "clash.db"
        _legacy_db(path, ["dup@example.com", "DUP@example.com"])
        with pytest.raises(RuntimeError):
            migrate(str(path))

    def test_cli_requires_db(self, monkeypatch):
        monkeypatch.setattr("blockwatch.migrations.run_migrations.DEFAULT_DB", "")
        assert migrate_main([]) == 1


# First-release layout: user_id/endpoint usage rows, plaintext reset tokens.
FIRST_RELEASE_DDL = """
CREATE TABLE incidents (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  postal_code TEXT NOT NULL,
  block TEXT NOT NULL,
  location TEXT NOT NULL,
  date_reported TEXT NOT NULL,
  incident_summary TEXT NOT NULL,
  source_url TEXT NOT NULL
);
CREATE INDEX idx_incidents_postal_code ON incidents(postal_code);
CREATE TABLE users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  email TEXT UNIQUE NOT NULL,
  password_hash TEXT NOT NULL,
  subscription_tier TEXT DEFAULT 'free',
  stripe_customer_id TEXT,
  stripe_subscription_id TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX idx_users_email ON users(email);
CREATE INDEX idx_users_stripe_customer ON users(stripe_customer_id);
CREATE TABLE api_usage (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL,
  endpoint TEXT NOT NULL,
  postal_code TEXT,
  timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX idx_usage_user_id ON api_usage(user_id);
CREATE INDEX idx_usage_timestamp ON api_usage(timestamp);
CREATE TABLE password_reset_tokens (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL,
  token TEXT UNIQUE NOT NULL,
  expires_at DATETIME NOT NULL,
  used BOOLEAN DEFAULT 0,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX idx_reset_tokens_token ON password_reset_tokens(token);
"""


@pytest.fixture
def first_release_db(tmp_path):
    path = tmp_path / "first_release.db"
    conn = sqlite3.connect(path)
    conn.executescript(FIRST_RELEASE_DDL)
    conn.execute("INSERT INTO users (email, password_hash) VALUES ('Free@Example.com', 'x')")
    conn.execute("INSERT INTO users (email, password_hash, subscription_tier, stripe_subscription_id) "
                 "VALUES ('paid@example.com', 'x', 'paid', 'sub_legacy')")
    conn.execute("INSERT INTO api_usage (user_id, endpoint, postal_code) VALUES (1, '/api/incidents', '60601')")
    conn.execute("INSERT INTO api_usage (user_id, endpoint, postal_code) VALUES (2, '/api/incidents', '60602')")
    conn.execute("INSERT INTO api_usage (user_id, endpoint, postal_code) VALUES (2, '/api/incidents', '60603')")
    conn.execute("INSERT INTO password_reset_tokens (user_id, token, expires_at) "
                 "VALUES (1, 'plaintext-token', '2099-01-01 00:00:00')")
    conn.commit()
    conn.close()
    return path


class TestFirstReleaseMigration:

    def test_usage_carried_over(self, first_release_db):
        migrate(str(first_release_db))
        db = Database(first_release_db)
        with db.connection() as conn:
            cols = {r[1] for r in conn.execute("PRAGMA table_info(api_usage)")}
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"account_id", "action_kind", "subject", "created_at"} <= cols
        assert "api_usage_legacy" not in tables

        ledger = UsageLedger(db)
        assert ledger.count_for(1, "lookup") == 1
        assert ledger.count_for(2, "lookup") == 2
        assert ledger.recent(1)[0]["subject"] == "60601"

    def test_spent_free_lookup_stays_spent(self, first_release_db):
        migrate(str(first_release_db))
        db = Database(first_release_db)
        gate = EntitlementGate(AccountStore(db), UsageLedger(db), free_limit=1)
        assert isinstance(gate.authorize(1, "lookup"), Deny)

    def test_append_only_after_migration(self, first_release_db):
        migrate(str(first_release_db))
        db = Database(first_release_db)
        with db.connection() as conn:
            triggers = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='trigger'")}
        assert {"trg_api_usage_no_update", "trg_api_usage_no_delete"} <= triggers
        with pytest.raises(StorageError, match="append-only"):
            with db.transaction() as conn:
                conn.execute("DELETE FROM api_usage")

    def test_plaintext_reset_tokens_discarded(self, first_release_db):
        migrate(str(first_release_db))
        with Database(first_release_db).connection() as conn:
            cols = {r[1] for r in conn.execute("PRAGMA table_info(password_reset_tokens)")}
            count = conn.execute("SELECT COUNT(*) FROM password_reset_tokens").fetchone()[0]
        assert "token_hash" in cols
        assert "token" not in cols
        assert count == 0

    def test_accounts_usable(self, first_release_db):
        migrate(str(first_release_db))
        store = AccountStore(Database(first_release_db))
        assert store.get_by_email("free@example.com").id == 1
        assert store.get_by_subscription("sub_legacy").id == 2

    def test_rerun_keeps_counts(self, first_release_db):
        migrate(str(first_release_db))
        migrate(str(first_release_db))
        assert UsageLedger(Database(first_release_db)).count_for(2, "lookup") == 2

    def test_resumes_after_interruption(self, first_release_db):
        # Stopped after the legacy tables were moved aside and the schema applied.
        db = Database(first_release_db)
        with db.transaction(immediate=True) as conn:
            set_aside_legacy_usage(conn)
            discard_legacy_reset_tokens(conn)
        db.init_schema()

        migrate(str(first_release_db))
        assert UsageLedger(db).count_for(2, "lookup") == 2
