import socket

import pytest

from edgerelay import log as log_mod
from edgerelay.config import load_config

TOKEN = "2b8f4c1e-7d3a-4e5f-9a6b-0c1d2e3f4a5b"


def free_port():
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture(autouse=True)
def _quiet_logs():
    log_mod.set_level("error")
    yield
    log_mod.set_level("info")


@pytest.fixture
def env(tmp_path):
    return {
        "UUID": TOKEN,
        "PORT": "8080",
        "DOMAIN": "relay.example.com",
        "FILE_PATH": str(tmp_path / "work"),
    }


@pytest.fixture
def cfg(env):
    return load_config(env)
