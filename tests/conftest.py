import os
import tempfile


# Ensure sensible defaults for tests before app import
_TMP_DIR = tempfile.mkdtemp(prefix="ridehail-tests-")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'rides.db')}")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-0123456789")
os.environ.setdefault("LOG_LEVEL", "WARNING")


def _create_schema() -> None:
    from ridehail.database import engine
    from ridehail.models import Base
    Base.metadata.create_all(bind=engine)


_create_schema()
