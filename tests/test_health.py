"""
Tests for health checks, metrics and request logging.
"""

from badgerswap.config import settings
from badgerswap.storage import Base, engine


class TestHealth:

    def test_liveness(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client):
        Base.metadata.drop_all(bind=engine)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert "schema" in response.json()["reason"]

    def test_not_ready_without_identity_secret(self, client, monkeypatch):
        monkeypatch.setattr(settings, "IDENTITY_SECRET", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "IDENTITY_SECRET not configured"


class TestRequestHandling:

    def test_request_id_header(self, client):
        first = client.get("/health/live")
        second = client.get("/health/live")

        assert first.headers["X-Request-ID"]
        assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]

    def test_error_body_shape(self, client, headers_for):
        response = client.get("/conversations/nope", headers=headers_for("u1"))

        body = response.json()
        assert body["status"] == "error"
        assert body["error_code"] == "NOT_FOUND"
        assert "retryable" not in body


class TestMetrics:

    def test_metrics_exposed(self, client, headers_for):
        created = client.post(
            "/conversations", json={"seller_id": "u2", "product_id": "p1"}, headers=headers_for("u1")
        ).json()
        client.post(
            f"/conversations/{created['conversation']['id']}/messages",
            json={"text": "hello"},
            headers=headers_for("u1"),
        )

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        body = response.text
        assert "http_requests_total" in body
        assert 'chat_messages_total{result="created"}' in body
        assert 'conversations_resolved_total{result="created"}' in body
