"""SQLite state layer.

All functions are async using aiosqlite, over a module-level connection
initialized by init_database().

  schema     : DDL and column migrations
  connection : connection lifecycle, write utilities
  jobs       : cron job CRUD and run-state updates
  run_logs   : append-only run history
"""

# Re-export every public symbol so that `from wakeline.state import X` works.

from wakeline.state.connection import (
    _get_db,
    _init_test_database,
    atomic_write,
    close_database,
    init_database,
)
from wakeline.state.jobs import (
    delete_job,
    get_due_jobs,
    get_job,
    get_running_jobs,
    list_jobs,
    mark_job_running,
    save_job,
    update_job_definition,
    update_job_state,
)
from wakeline.state.run_logs import append_run_log, get_run_logs

__all__ = [
    "_get_db",
    "_init_test_database",
    "append_run_log",
    "atomic_write",
    "close_database",
    "delete_job",
    "get_due_jobs",
    "get_job",
    "get_run_logs",
    "get_running_jobs",
    "init_database",
    "list_jobs",
    "mark_job_running",
    "save_job",
    "update_job_definition",
    "update_job_state",
]
