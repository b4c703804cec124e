from unittest.mock import MagicMock

import pytest
import redis
from fastapi import FastAPI, Request, Response
from fastapi.testclient import TestClient

from riskgate.middleware.threat_detection_middleware import ThreatDetectionMiddleware
from riskgate.services.store_guard import GuardedThreatStore
from riskgate.services.threat_store import InMemoryThreatStore

# TestClient's peer address
CLIENT = "testclient"


def build_app(store) -> FastAPI:
    app = FastAPI()
    app.add_middleware(ThreatDetectionMiddleware, store=store)

    @app.get("/search")
    async def search(q: str = ""):
        return {"q": q}

    @app.post("/submit")
    async def submit(request: Request):
        return await request.json()

    @app.post("/auth")
    async def auth():
        return Response(status_code=401)

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


@pytest.fixture
def client(store):
    return TestClient(build_app(store))


class TestPayloadScanning:
    def test_clean_request_adds_nothing(self, client, store):
        assert client.get("/search", params={"q": "blue shoes"}).status_code == 200
        assert store.suspicion_score(CLIENT) == 0.0

    def test_attack_in_query_adds_points(self, client, store):
        assert client.get("/search", params={"q": "<script>alert(1)</script>"}).status_code == 200
        assert store.suspicion_score(CLIENT) == 5.0

    def test_attack_in_body_is_scanned_and_body_still_readable(self, client, store):
        response = client.post("/submit", json={"path": "../../etc/passwd"})

        assert response.status_code == 200
        assert response.json() == {"path": "../../etc/passwd"}
        assert store.suspicion_score(CLIENT) == 5.0

    def test_second_attack_crosses_threshold(self, client):
        params = {"q": "<script>alert(1)</script>"}

        assert client.get("/search", params=params).status_code == 200
        response = client.get("/search", params=params)

        assert response.status_code == 403
        assert response.json() == {"error": "Security validation failed", "reason": "Suspicious activity detected"}
        assert response.headers["X-Security-Decision"] == "denied"

    def test_suspicious_client_blocked_until_score_decays(self, client, store, clock):
        store.log_suspicious_activity(CLIENT, 10)
        assert client.get("/search").status_code == 403

        clock.advance(300)  # one half-life
        assert client.get("/search").status_code == 200

    def test_exempt_path(self, client, store):
        store.log_suspicious_activity(CLIENT, 50)
        assert client.get("/health").status_code == 200


class TestFailedAuthentication:
    def test_401_adds_points(self, client, store):
        assert client.post("/auth").status_code == 401
        assert store.suspicion_score(CLIENT) == 3.0

    def test_repeated_failures_block_client(self, client):
        statuses = [client.post("/auth").status_code for _ in range(5)]
        assert statuses == [401, 401, 401, 401, 403]


class TestStoreFailures:
    def _broken(self):
        backend = MagicMock(spec=InMemoryThreatStore)
        backend.is_suspicious.side_effect = redis.ConnectionError("Connection refused")
        return backend

    def test_fail_closed_blocks(self):
        client = TestClient(build_app(GuardedThreatStore(self._broken(), fail_open=False)))

        response = client.get("/search")

        assert response.status_code == 403
        assert response.json()["reason"] == "Security store unavailable"

    def test_fail_open_passes(self):
        client = TestClient(build_app(GuardedThreatStore(self._broken(), fail_open=True)))
        assert client.get("/search").status_code == 200
