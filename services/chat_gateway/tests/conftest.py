import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
REPO_ROOT = Path(__file__).resolve().parents[3]
FIXTURES = Path(__file__).resolve().parent / "fixtures"
if str(SRC) not in sys.path:
    sys.path.append(str(SRC))
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ENDPOINTS_CONFIG", str(FIXTURES / "endpoints.yaml"))

from chat_gateway import settings as settings_module

settings_module.get_settings.cache_clear()

from chat_gateway.backends import BackendRegistry
from chat_gateway.endpoints import BACKEND_BEDROCK, BACKEND_LMI, EndpointDirectory
from chat_gateway.main import app, get_backends, get_endpoints
from utils import FakeBackend


@pytest.fixture()
def directory():
    return EndpointDirectory.load(FIXTURES / "endpoints.yaml")


@pytest.fixture()
def fake_backend():
    return FakeBackend()


@pytest.fixture()
def client(directory, fake_backend):
    registry = BackendRegistry({BACKEND_LMI: fake_backend, BACKEND_BEDROCK: fake_backend})
    app.dependency_overrides[get_endpoints] = lambda: directory
    app.dependency_overrides[get_backends] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()
