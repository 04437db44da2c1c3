from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.assistant_hub.observability import metrics


def test_metrics_endpoint_exposes_histograms(client, helper):
    assert client.get("/health").status_code == 200
    client.post("/chat", json={"assistantId": helper.assistant_id, "message": "Hi"})

    m = client.get("/metrics")
    assert m.status_code == 200
    body = m.text
    assert "# HELP assistant_hub_request_latency_seconds" in body
    assert "# TYPE assistant_hub_request_latency_seconds histogram" in body
    assert 'assistant_hub_turns_total{mode="text",outcome="ok"}' in body
    assert client.get("/api/metrics").status_code == 200


def test_failed_turn_is_counted_by_kind(client):
    client.post("/chat", json={"conversationId": "missing", "message": "Hi"})
    body = client.get("/metrics").text
    assert 'assistant_hub_turns_total{mode="text",outcome="NotFound"}' in body


def test_sanitize_path_cases():
    assert metrics.sanitize_path("") == "/"
    assert metrics.sanitize_path("/conversations/abc123/messages") == "/conversations"
    assert metrics.sanitize_path("/api/conversations/abc123/messages") == "/api/conversations"
    assert metrics.sanitize_path("/chat?conversationId=x") == "/chat"
    assert metrics.sanitize_path("/api") == "/api"


def test_middleware_does_not_break_on_metrics_exception(monkeypatch):
    app = FastAPI()
    app.middleware("http")(metrics.metrics_middleware_factory())

    @app.get("/ok")
    def ok():
        return {"ok": True}

    class Boom:
        def labels(self, *args, **kwargs):
            raise RuntimeError("boom")

    monkeypatch.setattr(metrics, "REQUEST_LATENCY", Boom())

    r = TestClient(app).get("/ok")
    assert r.status_code == 200
