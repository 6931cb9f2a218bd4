import json

from fastapi.testclient import TestClient

from agent_broker.app import create_app
from agent_broker.container import BrokerContainer

from conftest import make_policy_config, make_settings, parse_sse_text

OWNER = {"Authorization": "Bearer user-1"}
START_BODY = {
    "domain": "example.com",
    "actions": ["open", "fill", "click"],
    "requestedUrl": "https://example.com/sell",
    "device": {"id": "dev-1", "os": "macOS", "name": "Studio"},
    "plan": {"inputs": [{"selector": "#title", "text": "Jacket"}], "submitSelector": "#publish"},
}


def _start(client, headers=OWNER, body=START_BODY):
    response = client.post("/start", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_start_mints_token_and_pending_session(app):
    with TestClient(app) as client:
        body = _start(client)

    assert body["token"].count(".") == 2
    assert body["expiresAt"]
    assert body["session"]["consentState"] == "pending"
    assert body["session"]["domain"] == "example.com"
    assert body["session"]["actions"] == ["open", "fill", "click"]


def test_start_accepts_x_user_id_header(app):
    with TestClient(app) as client:
        body = _start(client, headers={"X-User-Id": "user-2"})
        response = client.get(f"/sessions/{body['session']['id']}", headers={"X-User-Id": "user-2"})
    assert response.status_code == 200


def test_start_requires_identity(app):
    with TestClient(app) as client:
        response = client.post("/start", json=START_BODY)
    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHENTICATED"


def test_start_rejects_unsupported_domain(app):
    body = dict(START_BODY, domain="blocked.example", requestedUrl="https://blocked.example/")
    with TestClient(app) as client:
        response = client.post("/start", json=body, headers=OWNER)
    assert response.status_code == 400
    assert response.json()["error"] == "UNSUPPORTED_DOMAIN"


def test_start_rejects_url_for_another_domain(app):
    body = dict(START_BODY, requestedUrl="https://elsewhere.test/")
    with TestClient(app) as client:
        response = client.post("/start", json=body, headers=OWNER)
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_REQUEST"


def test_disabled_agent_mode_returns_503_everywhere_but_health():
    app = create_app(container=BrokerContainer(make_settings(enabled=False), policy=make_policy_config()))
    with TestClient(app) as client:
        start = client.post("/start", json=START_BODY)
        pending = client.get("/consent/pending")
        health = client.get("/health")
    assert start.status_code == 503
    assert start.json()["error"] == "AGENT_DISABLED"
    assert pending.status_code == 503
    assert health.status_code == 200
    assert health.json()["checks"]["agent_mode"] == "disabled"


def test_missing_secret_is_config_error():
    app = create_app(container=BrokerContainer(make_settings(jws_secret=""), policy=make_policy_config()))
    with TestClient(app) as client:
        response = client.post("/start", json=START_BODY, headers=OWNER)
        health = client.get("/health")
    assert response.status_code == 500
    assert response.json()["error"] == "CONFIG_ERROR"
    assert health.json()["status"] == "degraded"


def test_unreadable_policy_is_config_error(tmp_path):
    settings = make_settings(policy_path=str(tmp_path / "missing.json"))
    app = create_app(container=BrokerContainer(settings))
    with TestClient(app) as client:
        response = client.post("/start", json=START_BODY, headers=OWNER)
        health = client.get("/health")
    assert response.status_code == 500
    assert response.json()["error"] == "CONFIG_ERROR"
    assert health.json()["checks"]["policy"]["status"] == "error"


def test_policy_is_loaded_from_file(tmp_path):
    path = tmp_path / "policy.json"
    path.write_text('{"allowDomains": ["example.com"], "typing": {"minDelayMs": 0, "maxDelayMs": 0}}')
    app = create_app(container=BrokerContainer(make_settings(policy_path=str(path))))
    with TestClient(app) as client:
        _start(client)
        health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["checks"]["policy"]["allowDomains"] == 1
    assert health["checks"]["sweeper"]["state"] == "running"


def test_consented_session_streams_events(app):
    with TestClient(app) as client:
        session_id = _start(client)["session"]["id"]
        pending = client.get("/consent/pending").json()
        decided = client.post("/consent", json={"sessionId": session_id, "allow": True})
        stream = client.get(f"/events/{session_id}", headers=OWNER)
        summary = client.get(f"/sessions/{session_id}", headers=OWNER).json()

    assert [p["sessionId"] for p in pending["prompts"]] == [session_id]
    assert decided.json() == {"sessionId": session_id, "consentState": "allowed"}
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    assert stream.headers["cache-control"] == "no-cache"

    frames = parse_sse_text(stream.text)
    assert frames[0]["retry"] == "5000"
    types = [json.loads(f["data"])["type"] for f in frames[1:-1]]
    assert types == ["OPENING", "OPENED_FORM", "FILLED_FIELDS", "SUBMITTED", "PUBLISHED"]
    assert frames[-1] == {"event": "end", "data": "{}", "retry": None}
    assert summary["consentState"] == "allowed"
    assert summary["finished"] is True


def test_denied_session_cannot_stream(app):
    with TestClient(app) as client:
        session_id = _start(client)["session"]["id"]
        client.post("/consent", json={"sessionId": session_id, "allow": False})
        second = client.post("/consent", json={"sessionId": session_id, "allow": True})
        stream = client.get(f"/events/{session_id}", headers=OWNER)

    assert second.json()["consentState"] == "denied"
    assert stream.status_code == 409
    assert stream.json()["error"] == "SESSION_NOT_READY"


def test_events_for_foreign_session_are_not_found(app):
    with TestClient(app) as client:
        session_id = _start(client)["session"]["id"]
        client.post("/consent", json={"sessionId": session_id, "allow": True})
        foreign = client.get(f"/events/{session_id}", headers={"Authorization": "Bearer intruder"})
        missing = client.get("/events/no-such-session", headers=OWNER)
        summary = client.get(f"/sessions/{session_id}", headers={"Authorization": "Bearer intruder"})

    assert foreign.status_code == missing.status_code == summary.status_code == 404
    assert foreign.json()["error"] == missing.json()["error"] == "NOT_FOUND"


def test_cancel_moves_pending_session_to_cancelled(app):
    with TestClient(app) as client:
        session_id = _start(client)["session"]["id"]
        cancelled = client.post("/cancel", json={"sessionId": session_id}, headers=OWNER)
        late_allow = client.post("/consent", json={"sessionId": session_id, "allow": True})

    assert cancelled.json()["consentState"] == "cancelled"
    assert late_allow.json()["consentState"] == "cancelled"


def test_dismissing_a_prompt_cancels_the_session(app):
    with TestClient(app) as client:
        session_id = _start(client)["session"]["id"]
        dismissed = client.post("/consent/dismiss", json={"sessionId": session_id})
        pending = client.get("/consent/pending").json()
        unknown = client.post("/consent", json={"sessionId": "nope", "allow": True})

    assert dismissed.json()["consentState"] == "cancelled"
    assert pending["count"] == 0
    assert unknown.status_code == 404


def test_session_start_with_externally_minted_token(app, container):
    minted = container.tokens.mint("user-9", "example.com", ["open"])
    payload = {"token": minted.token, "url": "https://example.com/sell", "actions": ["open"]}
    with TestClient(app) as client:
        first = client.post("/session/start", json=payload)
        replay = client.post("/session/start", json=payload)
        owned = client.get(f"/sessions/{first.json()['session']['id']}", headers={"Authorization": "Bearer user-9"})
        bad = client.post("/session/start", json=dict(payload, token="not.a.token"))

    assert first.status_code == 200
    assert first.json()["session"]["actions"] == ["open"]
    assert replay.status_code == 409
    assert replay.json()["error"] == "DUPLICATE_TOKEN"
    assert owned.status_code == 200
    assert bad.status_code == 401
    assert bad.json()["error"] == "INVALID_TOKEN"


def test_metrics_count_requests_and_sessions(app):
    with TestClient(app) as client:
        _start(client)
        client.post("/start", json=START_BODY)
        metrics = client.get("/metrics").json()

    assert metrics["requests"]["by_endpoint"]["POST /start"] == 2
    assert metrics["requests"]["by_status"]["status_401"] == 1
    assert metrics["sessions"]["created"] == 1


def test_late_policy_file_starts_the_expiry_sweep(tmp_path):
    path = tmp_path / "policy.json"
    app = create_app(container=BrokerContainer(make_settings(policy_path=str(path))))
    with TestClient(app) as client:
        before = client.post("/start", json=START_BODY, headers=OWNER)
        path.write_text('{"allowDomains": ["example.com"], "typing": {"minDelayMs": 0, "maxDelayMs": 0}}')
        _start(client)
        health = client.get("/health").json()

    assert before.json()["error"] == "CONFIG_ERROR"
    assert health["status"] == "healthy"
    assert health["checks"]["sweeper"]["state"] == "running"


def test_page_state_needs_an_active_run(app):
    with TestClient(app) as client:
        session_id = _start(client)["session"]["id"]
        client.post("/consent", json={"sessionId": session_id, "allow": True})
        idle = client.get(f"/sessions/{session_id}/page", headers=OWNER)
        foreign = client.get(f"/sessions/{session_id}/page", headers={"Authorization": "Bearer intruder"})

    assert idle.status_code == 409
    assert idle.json()["error"] == "SESSION_NOT_READY"
    assert idle.json()["detail"] == "no automation run is active"
    assert foreign.status_code == 404
