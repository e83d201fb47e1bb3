"""
Module: pos_kernel.db.triggers
Responsibility: Installing, removing and verifying database immutability
    triggers (Layer 2 of 2).  This is the database-level complement to the
    ORM-level listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only.  MUST NOT
    import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - pos_audit_logs rows: no UPDATE, no DELETE (and no TRUNCATE on
      PostgreSQL).
    - counters rows: no DELETE; value never decreases; (scope, period)
      never changes.
    - pos_transactions rows: no DELETE.

Failure modes:
    - SQLite RAISE(ABORT) / PostgreSQL RAISE EXCEPTION on any violation
      (surfaced by SQLAlchemy as IntegrityError, OperationalError or
      InternalError depending on driver).
    - ValueError for dialects other than SQLite and PostgreSQL.

Audit relevance:
    These triggers stop tampering that bypasses the ORM: raw SQL, bulk
    statements, a second application talking to the same database.  Both
    layers must be bypassed simultaneously to rewrite history, and even
    then the hash chain makes the rewrite detectable.

Statements are executed one at a time through exec_driver_sql and contain
no bind-parameter markers.
"""

from sqlalchemy.engine import Engine

# =============================================================================
# SQLite
# =============================================================================

_SQLITE_INSTALL = [
    """
    CREATE TRIGGER IF NOT EXISTS trg_pos_audit_logs_no_update
    BEFORE UPDATE ON pos_audit_logs
    BEGIN
        SELECT RAISE(ABORT, 'pos_audit_logs is append-only: UPDATE rejected');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_pos_audit_logs_no_delete
    BEFORE DELETE ON pos_audit_logs
    BEGIN
        SELECT RAISE(ABORT, 'pos_audit_logs is append-only: DELETE rejected');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_counters_monotonic
    BEFORE UPDATE ON counters
    WHEN NEW.value < OLD.value OR NEW.scope <> OLD.scope OR NEW.period <> OLD.period
    BEGIN
        SELECT RAISE(ABORT, 'counters are monotonic: value cannot decrease');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_counters_no_delete
    BEFORE DELETE ON counters
    BEGIN
        SELECT RAISE(ABORT, 'counters cannot be deleted');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_pos_transactions_no_delete
    BEFORE DELETE ON pos_transactions
    BEGIN
        SELECT RAISE(ABORT, 'pos_transactions cannot be deleted');
    END
    """,
]

# =============================================================================
# PostgreSQL
# =============================================================================

_PG_INSTALL = [
    """
    CREATE OR REPLACE FUNCTION pos_reject_audit_mutation() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION USING
            MESSAGE = 'pos_audit_logs is append-only: ' || TG_OP || ' rejected',
            ERRCODE = 'integrity_constraint_violation';
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE FUNCTION pos_guard_counter_update() RETURNS trigger AS $$
    BEGIN
        IF NEW.value < OLD.value OR NEW.scope <> OLD.scope OR NEW.period <> OLD.period THEN
            RAISE EXCEPTION USING
                MESSAGE = 'counters are monotonic: value cannot decrease',
                ERRCODE = 'integrity_constraint_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE FUNCTION pos_reject_delete() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION USING
            MESSAGE = TG_TABLE_NAME || ' rows cannot be deleted',
            ERRCODE = 'integrity_constraint_violation';
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS trg_pos_audit_logs_no_update ON pos_audit_logs",
    """
    CREATE TRIGGER trg_pos_audit_logs_no_update
    BEFORE UPDATE ON pos_audit_logs
    FOR EACH ROW EXECUTE FUNCTION pos_reject_audit_mutation()
    """,
    "DROP TRIGGER IF EXISTS trg_pos_audit_logs_no_delete ON pos_audit_logs",
    """
    CREATE TRIGGER trg_pos_audit_logs_no_delete
    BEFORE DELETE ON pos_audit_logs
    FOR EACH ROW EXECUTE FUNCTION pos_reject_audit_mutation()
    """,
    "DROP TRIGGER IF EXISTS trg_pos_audit_logs_no_truncate ON pos_audit_logs",
    """
    CREATE TRIGGER trg_pos_audit_logs_no_truncate
    BEFORE TRUNCATE ON pos_audit_logs
    FOR EACH STATEMENT EXECUTE FUNCTION pos_reject_audit_mutation()
    """,
    "DROP TRIGGER IF EXISTS trg_counters_monotonic ON counters",
    """
    CREATE TRIGGER trg_counters_monotonic
    BEFORE UPDATE ON counters
    FOR EACH ROW EXECUTE FUNCTION pos_guard_counter_update()
    """,
    "DROP TRIGGER IF EXISTS trg_counters_no_delete ON counters",
    """
    CREATE TRIGGER trg_counters_no_delete
    BEFORE DELETE ON counters
    FOR EACH ROW EXECUTE FUNCTION pos_reject_delete()
    """,
    "DROP TRIGGER IF EXISTS trg_pos_transactions_no_delete ON pos_transactions",
    """
    CREATE TRIGGER trg_pos_transactions_no_delete
    BEFORE DELETE ON pos_transactions
    FOR EACH ROW EXECUTE FUNCTION pos_reject_delete()
    """,
]

_PG_DROP = [
    "DROP TRIGGER IF EXISTS trg_pos_audit_logs_no_update ON pos_audit_logs",
    "DROP TRIGGER IF EXISTS trg_pos_audit_logs_no_delete ON pos_audit_logs",
    "DROP TRIGGER IF EXISTS trg_pos_audit_logs_no_truncate ON pos_audit_logs",
    "DROP TRIGGER IF EXISTS trg_counters_monotonic ON counters",
    "DROP TRIGGER IF EXISTS trg_counters_no_delete ON counters",
    "DROP TRIGGER IF EXISTS trg_pos_transactions_no_delete ON pos_transactions",
    "DROP FUNCTION IF EXISTS pos_reject_audit_mutation()",
    "DROP FUNCTION IF EXISTS pos_guard_counter_update()",
    "DROP FUNCTION IF EXISTS pos_reject_delete()",
]

# Trigger names present on every supported dialect
ALL_TRIGGER_NAMES = [
    "trg_pos_audit_logs_no_update",
    "trg_pos_audit_logs_no_delete",
    "trg_counters_monotonic",
    "trg_counters_no_delete",
    "trg_pos_transactions_no_delete",
]

_DIALECT_EXTRA_TRIGGERS = {
    "sqlite": [],
    "postgresql": ["trg_pos_audit_logs_no_truncate"],
}


def _dialect(engine: Engine) -> str:
    name = engine.dialect.name
    if name not in _DIALECT_EXTRA_TRIGGERS:
        raise ValueError(f"Immutability triggers are not available for dialect {name!r}")
    return name


def expected_trigger_names(engine: Engine) -> list[str]:
    """Trigger names that should exist on ``engine``'s dialect."""
    return ALL_TRIGGER_NAMES + _DIALECT_EXTRA_TRIGGERS[_dialect(engine)]


def _run_statements(engine: Engine, statements: list[str]) -> None:
    with engine.begin() as conn:
        for statement in statements:
            conn.exec_driver_sql(statement)


# =============================================================================
# Public API
# =============================================================================


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install database-level immutability triggers.

    Preconditions: Tables must exist (call after create_all()).
    Postconditions: Every name in expected_trigger_names(engine) exists.
        Installation is idempotent.
    """
    if _dialect(engine) == "sqlite":
        _run_statements(engine, _SQLITE_INSTALL)
    else:
        _run_statements(engine, _PG_INSTALL)


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove database-level immutability triggers.

    WARNING: Only for tests and supervised data repair.  Re-install
    IMMEDIATELY afterwards.
    """
    if _dialect(engine) == "sqlite":
        _run_statements(
            engine,
            [f"DROP TRIGGER IF EXISTS {name}" for name in expected_trigger_names(engine)],
        )
    else:
        _run_statements(engine, _PG_DROP)


def get_installed_triggers(engine: Engine) -> list[str]:
    """Installed immutability triggers, sorted by name."""
    expected = expected_trigger_names(engine)
    if _dialect(engine) == "sqlite":
        query = "SELECT name FROM sqlite_master WHERE type = 'trigger'"
    else:
        query = "SELECT tgname FROM pg_trigger WHERE NOT tgisinternal"

    with engine.connect() as conn:
        names = {row[0] for row in conn.exec_driver_sql(query)}
    return sorted(name for name in expected if name in names)


def get_missing_triggers(engine: Engine) -> list[str]:
    """Immutability triggers that should be installed but aren't."""
    installed = set(get_installed_triggers(engine))
    return sorted(set(expected_trigger_names(engine)) - installed)


def triggers_installed(engine: Engine) -> bool:
    """True iff every expected immutability trigger is installed."""
    return not get_missing_triggers(engine)
