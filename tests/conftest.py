import os
import tempfile

# Settings are read at import time; keep tests on a throwaway SQLite file
# and keep background threads off unless a test starts them.
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+pysqlite:///" + os.path.join(tempfile.gettempdir(), f"crm_automations_test_{os.getpid()}.db"),
)
os.environ.setdefault("AUTO_CREATE_DB", "true")
os.environ.setdefault("ENABLE_AUTOMATION_ENGINE", "false")
os.environ.setdefault("ENABLE_TIME_TRIGGERS", "false")
os.environ.setdefault("AUTOMATION_ACTION_BACKOFF_SEC", "0")
os.environ.setdefault("CRM_ENV", "dev")
