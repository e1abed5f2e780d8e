from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from monitor_core import create_app
from monitor_ops import Monitor, MonitorConfig
from tests.fake_backends import FakeContainers, FakeRepository, FakeRunner

PASSWORD = "hunter2"


def make_config(**overrides: Any) -> MonitorConfig:
    values = {
        "password": PASSWORD,
        "start_script": "/opt/ss13/start.sh",
        "stop_script": "/opt/ss13/stop.sh",
        "update_script": "/opt/ss13/update.sh",
        "restoresave_script": "/opt/ss13/restoresave.sh",
        "git_dir": "/opt/ss13/repo",
        "pid_file": "/run/ss13.pid",
        "container": "ss13",
    }
    values.update(overrides)
    return MonitorConfig(**values)


def load_core(monitor: Monitor, password: str = PASSWORD) -> TestClient:
    client = TestClient(create_app(monitor, password))
    client.auth = ("auth", password)
    return client


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def containers() -> FakeContainers:
    return FakeContainers()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def monitor(runner, containers, repository) -> Monitor:
    return Monitor(make_config(), runner, containers, repository)
