from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from tracker.db import init_db
from tracker.main import create_app
from tracker.schemas import DeviceRegister, DeviceOut
from tracker.service import TrackerService
from tracker.settings import Settings
from tracker.storage import Store

DEVICE_ID = "AA:BB:CC:00:11:22"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> Store:
    return Store(engine)


@pytest.fixture
def events() -> list[str]:
    return []


@pytest.fixture
def service(store: Store, events: list[str]) -> TrackerService:
    return TrackerService(store, publish=events.append)


@pytest.fixture
def device(service: TrackerService) -> DeviceOut:
    return service.register_device(DeviceRegister(device_id=DEVICE_ID, device_name="Bike tracker"))


@pytest.fixture
def client(engine) -> TestClient:
    app = create_app(Settings(database_url="sqlite://"), engine=engine)
    return TestClient(app)
