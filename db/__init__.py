from .db import (
    Base,
    User,
    DailyTask,
    SendRecord,
    DeadLetterJob,
    get_engine,
    get_session_maker,
    create_task_engine,
    create_all,
    dispose_engine,
)  # noqa: F401
from .ledger import Ledger  # noqa: F401
from .users import UserStore  # noqa: F401
