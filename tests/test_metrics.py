from fastapi.testclient import TestClient

from src.chatrelay.api.main import app
from src.chatrelay.observability.metrics import sanitize_path
from src.chatrelay.services.stream_lifecycle import get_stream_lifecycle


client = TestClient(app)


def test_metrics_endpoint_exposes_histogram():
    r = client.get("/health")
    assert r.status_code == 200

    m = client.get("/metrics")
    assert m.status_code == 200
    body = m.text

    assert "# HELP chatrelay_request_latency_seconds" in body
    assert "# TYPE chatrelay_request_latency_seconds histogram" in body
    assert (
        "chatrelay_request_latency_seconds_count" in body
        or "chatrelay_request_latency_seconds_bucket" in body
        or "chatrelay_request_latency_seconds_sum" in body
    )


def test_stream_transitions_are_counted():
    lc = get_stream_lifecycle()
    lc.start("t1", "m-metrics", "u1")
    lc.mark_interrupted("m-metrics")
    lc.mark_interrupted("m-metrics")

    body = client.get("/metrics").text
    assert 'chatrelay_stream_transitions_total{status="paused"}' in body
    assert 'chatrelay_stream_conditional_misses_total{operation="mark_interrupted"}' in body


def test_sanitize_path_keeps_coarse_prefix():
    assert sanitize_path("") == "/"
    assert sanitize_path("/") == "/"
    assert sanitize_path("/streams/stream_abc/resume") == "/streams"
    assert sanitize_path("/api/streams/stream_abc/resume?continue=true") == "/api/streams"
    assert sanitize_path("/api") == "/api"


def test_health_reports_stream_store():
    for path in ("/health", "/api/health"):
        body = client.get(path).json()
        assert body["status"] == "ok"
        assert body["components"]["streams"] == "InMemoryStreamStore"
