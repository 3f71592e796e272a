import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The module-level store opens its database at import time.
os.environ.setdefault(
    "SILVERWALKS_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="silverwalks-tests-"), "walks.sqlite3"),
)
os.environ.pop("FIREBASE_CREDENTIALS_PATH", None)
