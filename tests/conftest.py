import os
import pytest


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate RELAYQ_* environment variables between tests."""
    backup = {k: v for k, v in os.environ.items() if k.startswith("RELAYQ_")}
    try:
        yield
    finally:
        for k in [k for k in os.environ if k.startswith("RELAYQ_")]:
            if k not in backup:
                os.environ.pop(k, None)
        os.environ.update(backup)
