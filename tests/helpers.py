"""Shared test helpers: a controllable clock and request signal builders."""

from riskgate.schemas.security import CheckResult, RequestSignal

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BROWSER_HEADERS = {"accept": "text/html", "accept-language": "en"}


class FakeClock:
    """Manually advanced time source for stores and decay."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_signal(**overrides) -> RequestSignal:
    values = {
        "ip": "1.2.3.4",
        "user_agent": BROWSER_UA,
        "endpoint": "/login",
        "method": "POST",
        "headers": dict(BROWSER_HEADERS),
    }
    values.update(overrides)
    return RequestSignal(**values)


class StubDetector:
    """Detector double returning a fixed result and counting calls."""

    def __init__(self, name: str, weight: float, result: CheckResult | None = None):
        self.name = name
        self.weight = weight
        self.result = result or CheckResult.allow()
        self.calls = 0

    def evaluate(self, signal, config):
        self.calls += 1
        return self.result
