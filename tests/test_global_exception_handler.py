from __future__ import annotations

from types import SimpleNamespace

from fastapi.testclient import TestClient

import main
from billing import PlanCatalog


def test_unhandled_exceptions_are_normalized(monkeypatch) -> None:
    monkeypatch.setattr(main, "init_billing_db", lambda: None)

    def _boom():
        raise RuntimeError("boom: should not leak")

    monkeypatch.setattr(main, "get_coordinator", _boom)

    with TestClient(main.app, raise_server_exceptions=False) as client:
        response = client.get("/billing/plans", headers={"X-Trace-Id": "trace-abc"})
        assert response.status_code == 500, response.text
        payload = response.json()
        assert payload.get("error_code") == "INTERNAL_SERVER_ERROR"
        assert payload.get("message") == "internal server error"
        trace_id = str(payload.get("trace_id") or "")
        assert trace_id == "trace-abc"
        assert response.headers.get("X-Trace-Id") == trace_id
        assert "boom" not in response.text.lower()


def test_trace_id_is_generated_when_absent(monkeypatch) -> None:
    monkeypatch.setattr(main, "init_billing_db", lambda: None)
    monkeypatch.setattr(main, "get_coordinator", lambda: SimpleNamespace(catalog=PlanCatalog()))
    with TestClient(main.app) as client:
        response = client.get("/billing/plans/not-a-plan")
        assert response.status_code == 404
        assert len(response.headers.get("X-Trace-Id") or "") == 32
