from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from taskboard.auth import UserDirectory
from taskboard.config import Settings
from taskboard.controller import BoardController
from taskboard.main import create_app
from taskboard.models import Board


@pytest.fixture
def tomorrow():
    return date.today() + timedelta(days=1)


@pytest.fixture
def events():
    return []


@pytest.fixture
def board(events):
    return Board(0, "Sprint 1", "owner@example.com", events.append)


@pytest.fixture
def users():
    directory = UserDirectory()
    for email in ("alice@example.com", "bob@example.com", "carol@example.com"):
        directory.register(email, "secret")
    return directory


@pytest.fixture
def controller(users, events):
    return BoardController(users, events.append)


@pytest.fixture
def client(users, controller):
    return TestClient(create_app(Settings(), users, controller))