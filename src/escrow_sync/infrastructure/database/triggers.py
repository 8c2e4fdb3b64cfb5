"""Database-resident deadline guard on the `trades` table.

Before any UPDATE of a trade row (unless the trade is being cancelled), a leg
that leaves a pre-deadline state after that deadline has passed may only land
in RELEASED, COMPLETED or CANCELLED:

    - deposit deadline: guards legs leaving CREATED
    - fiat deadline:    guards legs leaving CREATED or FUNDED

Updates that do not change a leg's state never fire the guard, so unrelated
writes to a FIAT_PAID trade with an expired deposit deadline go through.

The guard exists independently of the reconciler and the deadline monitor.
Both dialects raise an error whose text contains "deadline" and "passed";
`is_deadline_violation` recognises it.

Note: DDL text is %-formatted by SQLAlchemy, hence the doubled percent signs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import DDL, event
from sqlalchemy.exc import DBAPIError

if TYPE_CHECKING:
    from sqlalchemy import Table

ALLOWED_AFTER_DEADLINE = ("RELEASED", "COMPLETED", "CANCELLED")

_DEADLINES = (
    # (column suffix, label, states the leg may be leaving)
    ("escrow_deposit_deadline", "escrow deposit deadline", ("CREATED",)),
    ("fiat_payment_deadline", "fiat payment deadline", ("CREATED", "FUNDED")),
)


def _sql_list(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{v}'" for v in values)


def _postgres_checks() -> str:
    allowed = _sql_list(ALLOWED_AFTER_DEADLINE)
    blocks = []
    for leg in (1, 2):
        for suffix, label, sources in _DEADLINES:
            column = f"leg{leg}_{suffix}"
            blocks.append(
                f"""
    IF OLD.leg{leg}_state IN ({_sql_list(sources)})
       AND NEW.leg{leg}_state IS DISTINCT FROM OLD.leg{leg}_state
       AND NEW.leg{leg}_state NOT IN ({allowed})
       AND NEW.{column} IS NOT NULL
       AND NEW.{column} < NOW() THEN
        RAISE EXCEPTION 'Leg{leg} {label} (%%) passed', NEW.{column};
    END IF;"""
            )
    return "".join(blocks)


POSTGRES_FUNCTION = DDL(
    f"""
CREATE OR REPLACE FUNCTION enforce_trade_leg_deadlines() RETURNS trigger AS $$
BEGIN
    IF NEW.overall_status = 'CANCELLED' THEN
        RETURN NEW;
    END IF;
{_postgres_checks()}
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""
)

POSTGRES_TRIGGER = DDL(
    """
CREATE TRIGGER trg_trades_enforce_deadlines
BEFORE UPDATE ON trades
FOR EACH ROW EXECUTE FUNCTION enforce_trade_leg_deadlines();
"""
)


def _sqlite_checks() -> str:
    allowed = _sql_list(ALLOWED_AFTER_DEADLINE)
    now = "strftime('%%Y-%%m-%%d %%H:%%M:%%f', 'now')"
    statements = []
    for leg in (1, 2):
        for suffix, label, sources in _DEADLINES:
            column = f"leg{leg}_{suffix}"
            statements.append(
                f"""
    SELECT RAISE(ABORT, 'Leg{leg} {label} passed')
    WHERE OLD.leg{leg}_state IN ({_sql_list(sources)})
      AND NEW.leg{leg}_state IS NOT OLD.leg{leg}_state
      AND NEW.leg{leg}_state NOT IN ({allowed})
      AND NEW.{column} IS NOT NULL
      AND NEW.{column} < {now};"""
            )
    return "".join(statements)


SQLITE_TRIGGER = DDL(
    f"""
CREATE TRIGGER IF NOT EXISTS trg_trades_enforce_deadlines
BEFORE UPDATE ON trades
FOR EACH ROW
WHEN NEW.overall_status <> 'CANCELLED'
BEGIN{_sqlite_checks()}
END;
"""
)


def attach_deadline_trigger(table: Table) -> None:
    """Install the guard whenever `table` is created through metadata.create_all."""
    event.listen(table, "after_create", POSTGRES_FUNCTION.execute_if(dialect="postgresql"))
    event.listen(table, "after_create", POSTGRES_TRIGGER.execute_if(dialect="postgresql"))
    event.listen(table, "after_create", SQLITE_TRIGGER.execute_if(dialect="sqlite"))


def is_deadline_violation(exc: BaseException) -> bool:
    """Return True if `exc` is the deadline trigger rejecting a write."""
    if not isinstance(exc, DBAPIError):
        return False
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return "deadline" in text and "passed" in text
