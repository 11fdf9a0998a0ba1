import os
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.config import Settings
from app.container import build_container
from app.main import create_app


def make_settings(tmp_path, **overrides):
    values = dict(
        db_path=str(tmp_path / "broker.sqlite3"),
        provision_indexes=True,
        cors_origins=["*"],
        trusted_hosts=["*"],
        auth_required=False,
        auth_secret="test-secret",
        auth_token_ttl_hours=24,
        auth_demo_password="broker-demo",
        firebase_credentials_path="",
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def container(tmp_path):
    return build_container(make_settings(tmp_path))


@pytest.fixture
def client(container):
    return TestClient(create_app(container))


@pytest.fixture
def construction_payload():
    def _payload(client_id="client_1", **extra):
        payload = {
            "client_id": client_id,
            "budget": 50000,
            "details": {
                "request_type": "construction",
                "project_type": "extension",
                "description": "Two-storey rear extension",
            },
        }
        payload.update(extra)
        return payload

    return _payload
