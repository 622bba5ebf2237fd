from .db import (
    Base,
    ScheduledCallRow,
    SqlScheduleStore,
    advisory_lock_key,
    create_all,
    dispose_engine,
    fetch_due_calls,
    get_session,
)  # noqa: F401
