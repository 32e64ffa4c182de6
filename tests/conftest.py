import os
import socket

import pytest


# Keep tests away from the user's real settings file and any local .env values.
os.environ.setdefault("SETTINGS_PATH", os.path.join(os.path.dirname(__file__), ".settings-test.json"))
os.environ.setdefault("GATEWAY_LOG_LEVEL", "DEBUG")


def _find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return int(s.getsockname()[1])


@pytest.fixture
def free_port() -> int:
    return _find_free_port()
