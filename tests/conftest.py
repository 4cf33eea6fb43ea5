import os
import tempfile


# research_sessions.main builds its engine at import time.
os.environ["RESEARCH_DATA_DIR"] = tempfile.mkdtemp(prefix="research-sessions-tests-")
os.environ.pop("RESEARCH_EXECUTOR_URL", None)
os.environ.pop("RESEARCH_KNOWLEDGE_DIRECTORY", None)
os.environ.pop("AUTH_DEV_USER_ID", None)
