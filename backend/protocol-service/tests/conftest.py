import os
import sys
import tempfile
from pathlib import Path

import pytest


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["ODP_GEMINI_API_KEY"] = ""
os.environ["ODP_ANTHROPIC_API_KEY"] = ""
os.environ["ODP_CATALOG_DB_PATH"] = ""
os.environ["ODP_LOG_LEVEL"] = "INFO"

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "protocol-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["ODP_LEDGER_DB_PATH"] = str(_TEST_DATA_DIR / "ledger.sqlite3")
os.environ["ODP_STORAGE_ROOT"] = str(_TEST_DATA_DIR / "objects")


@pytest.fixture
def photo():
    from models import InferenceImage

    return InferenceImage(data=b"\xff\xd8\xff-original-photo", media_type="image/jpeg")


@pytest.fixture
def seed_index():
    from catalog import CatalogIndex, InMemoryCatalogRepository

    return CatalogIndex.load(InMemoryCatalogRepository.from_seed(), ["Filtek Z350 XT"])
