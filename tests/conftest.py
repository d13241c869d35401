import os
import sys

import pytest

# Ensure the package and test helpers are importable without installation
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from keystore import api

    api.reset_runtime()
    with TestClient(api.app) as c:
        yield c
