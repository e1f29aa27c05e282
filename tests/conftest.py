import os
import tempfile

# settings are read at import time by the app modules
_tmp = tempfile.mkdtemp(prefix="gate-access-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_tmp}/app.db")
os.environ.setdefault("AUTH_JWKS_URL", "http://auth.test/auth/jwks")
os.environ.setdefault("CREDENTIAL_SECRET", "test-credential-secret")
os.environ.setdefault("EVENTS_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
