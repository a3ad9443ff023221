import sys
from pathlib import Path


# Ensure backend is on sys.path for tests that import modules directly.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))


import pytest


@pytest.fixture
def anyio_backend():
    # The code under test is asyncio-based (asyncio.to_thread etc.).
    return "asyncio"
