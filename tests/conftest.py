import logging

import pytest

from aes_tracer.config import Config
from aes_tracer.readiness import Readiness
from aes_tracer.service import create_app
from tests.fakes import FakeTransport


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    return Config(target_host="svc.internal")


@pytest.fixture
def readiness():
    return Readiness()


@pytest.fixture
def app(config, readiness, transport):
    app = create_app(config, readiness=readiness, transport=transport)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
