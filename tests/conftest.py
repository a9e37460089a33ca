import os
import shutil
from pathlib import Path

import pytest

# Ensure tests never touch a homeserver database or the local data directory.
test_root = Path(__file__).resolve().parents[1]
test_db_path = test_root / "test.db"
test_data_dir = test_root / "test-data"
os.environ["DATABASE_URL"] = f"sqlite:///{test_db_path.as_posix()}"
os.environ["DATA_DIR"] = test_data_dir.as_posix()
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["MATRIX_URL"] = "http://synapse.test"
os.environ["MATRIX_ADMIN_TOKEN"] = "test-token"

from janitor.db.base import Base  # noqa: E402
from janitor.db.session import engine  # noqa: E402


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    shutil.rmtree(test_data_dir, ignore_errors=True)
    yield
    Base.metadata.drop_all(engine)
    shutil.rmtree(test_data_dir, ignore_errors=True)
