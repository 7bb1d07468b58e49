"""Top-level package for the bucket budgeting engine.

The package implements envelope ("bucket") budgeting over bank
transactions pulled from an account-aggregation API.  The primary
modules are:

* ``budget_math`` - pure balance, budget-cycle and rollover functions
* ``ledger`` - available-to-budget, reserved amounts and allocation writes
* ``scheduled`` - recurring obligations and their matching
* ``rules`` - merchant based auto-categorization
* ``sync`` - reconciliation of aggregator data against stored transactions
* ``buckets``, ``transactions``, ``accounts`` and ``settings`` - user-facing CRUD

Storage lives in ``db`` (SQLite) and the aggregator client in
``aggregator``.  Call ``config.configure_logging()`` once at start-up
and ``db.init_db()`` before first use.
"""

from . import budget_math  # noqa: F401  # re-exported for convenience
from . import errors  # noqa: F401  # re-exported for convenience

__all__ = ["budget_math", "errors"]
