import os

# Must be set before riskgate.config is imported anywhere
os.environ.setdefault("APP_ENV", "testing")
os.environ["REDIS_ENABLED"] = "false"
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import pytest  # noqa: E402

from riskgate.config.security_config import EngineConfig  # noqa: E402
from riskgate.services.risk_pipeline import RiskPipeline  # noqa: E402
from riskgate.services.threat_store import InMemoryThreatStore  # noqa: E402
from tests.helpers import FakeClock, make_signal  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryThreatStore(clock=clock)


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def pipeline(store, config):
    return RiskPipeline(store, config)


@pytest.fixture
def browser_signal():
    return make_signal()
