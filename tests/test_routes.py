# ============================================================================
# API ROUTE TESTS
# ============================================================================
# STATUS: Tests - HTTP surface over the running application
# PURPOSE: Verify event ingestion, run control, approvals and registry views
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Route Tests

The app is started through its lifespan with the shipped pipelines and
environments, so requests go through the same wiring as production.

Covers:
1. Root, liveness and scheduler status
2. Pipelines: list, get, validate, register
3. Events: 202 with run ids, dispatch errors in the body, bad payloads
4. Runs: detail, timeline, artifacts, cancel (404 / 409 paths)
5. Approvals: 403 for unlisted actors, approve, 409 once resolved
6. Environments with deploy markers

Run with:
    pytest tests/test_routes.py -v
"""

import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from main import app


REPO_ROOT = Path(__file__).resolve().parent.parent
API = "/api/v1"

PUSH_MAIN = {"kind": "push", "ref": "refs/heads/main", "sha": "abc123", "actor": "alice"}


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("PIPELINES_DIR", str(REPO_ROOT / "pipelines"))
    monkeypatch.setenv("ENVIRONMENTS_FILE", str(REPO_ROOT / "environments.yaml"))
    with TestClient(app) as client:
        client.app.state.services.scheduler.max_wait_seconds = 0.05
        yield client


def poll(fetch, predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while True:
        value = fetch()
        if predicate(value):
            return value
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not reached: {value}")
        time.sleep(0.05)


def get_run(client, run_id):
    response = client.get(f"{API}/runs/{run_id}")
    assert response.status_code == 200
    return response.json()


def job_status(detail, name):
    return next(j["status"] for j in detail["jobs"] if j["name"] == name)


def start_release(client):
    response = client.post(f"{API}/events", json=PUSH_MAIN)
    assert response.status_code == 202
    body = response.json()
    assert body["errors"] == []
    assert len(body["run_ids"]) == 1
    return body["run_ids"][0]


def wait_for_prod_gate(client, run_id):
    poll(lambda: get_run(client, run_id), lambda d: job_status(d, "deploy-prod") == "blocked")
    approvals = client.get(f"{API}/approvals", params={"run_id": run_id, "state": "pending"}).json()
    assert approvals["total"] == 1
    return approvals["approvals"][0]


# ============================================================================
# SERVICE
# ============================================================================

class TestService:

    def test_root(self, client):
        body = client.get("/").json()
        assert body["status"] == "running"
        assert client.get("/livez").json() == {"status": "alive"}

    def test_scheduler_status(self, client):
        body = client.get(f"{API}/scheduler/status").json()
        assert body["scheduler"]["active_runs"] == 0
        assert body["approvals"]["environments"] == 2
        assert set(body) >= {"scheduler", "runs", "approvals", "artifacts", "rollbacks", "ticker"}


# ============================================================================
# PIPELINES
# ============================================================================

VALID_DOCUMENT = "pipeline_id: adhoc\njobs:\n  a:\n    steps:\n      - run: echo ok\n"


class TestPipelines:

    def test_list(self, client):
        body = client.get(f"{API}/pipelines").json()
        assert {p["pipeline_id"] for p in body["pipelines"]} == {"release", "nightly"}
        assert body["load_errors"] == {}

    def test_get(self, client):
        body = client.get(f"{API}/pipelines/release").json()
        assert body["definition"]["pipeline_id"] == "release"
        assert "on" in body["definition"]
        assert body["revisions"] == [1]

    def test_get_missing(self, client):
        assert client.get(f"{API}/pipelines/nope").status_code == 404

    def test_validate(self, client):
        ok = client.post(f"{API}/pipelines/validate", json={"document": VALID_DOCUMENT}).json()
        assert ok == {"valid": True, "pipeline_id": "adhoc", "errors": []}

        bad = client.post(
            f"{API}/pipelines/validate",
            json={"document": "pipeline_id: x\njobs:\n  a:\n    needs: b\n    steps: [{run: x}]\n"},
        ).json()
        assert bad["valid"] is False
        assert bad["errors"]
        assert client.get(f"{API}/pipelines/x").status_code == 404

    def test_validate_malformed_yaml(self, client):
        body = client.post(f"{API}/pipelines/validate", json={"document": "jobs: [oops"}).json()
        assert body["valid"] is False

    def test_register(self, client):
        response = client.post(f"{API}/pipelines", json={"document": VALID_DOCUMENT})
        assert response.status_code == 201
        assert response.json()["revision"] == 1

        changed = VALID_DOCUMENT.replace("echo ok", "echo v2")
        assert client.post(f"{API}/pipelines", json={"document": changed}).json()["revision"] == 2

    def test_register_invalid(self, client):
        response = client.post(f"{API}/pipelines", json={"document": "pipeline_id: x\njobs: {}\n"})
        assert response.status_code == 400


# ============================================================================
# EVENTS AND RUNS
# ============================================================================

class TestEvents:

    def test_no_match_is_not_an_error(self, client):
        response = client.post(f"{API}/events", json={**PUSH_MAIN, "ref": "refs/heads/feature/x"})
        assert response.status_code == 202
        assert response.json() == {"run_ids": [], "errors": []}

    def test_dispatch_errors_reported(self, client):
        response = client.post(f"{API}/events", json={
            "kind": "workflow_dispatch",
            "pipeline_id": "release",
            "inputs": {"dry_run": "perhaps"},
        })
        assert response.status_code == 202
        body = response.json()
        assert body["run_ids"] == []
        assert "dry_run" in body["errors"][0]

    def test_invalid_payload(self, client):
        assert client.post(f"{API}/events", json={"kind": "bogus"}).status_code == 422


class TestRuns:

    def test_release_through_api(self, client):
        run_id = start_release(client)
        request = wait_for_prod_gate(client, run_id)

        denied = client.post(f"{API}/approvals/{request['request_id']}/approve", json={"actor": "mallory"})
        assert denied.status_code == 403

        approved = client.post(
            f"{API}/approvals/{request['request_id']}/approve",
            json={"actor": "alice", "comment": "ship it"},
        )
        assert approved.status_code == 200
        assert approved.json()["state"] == "approved"

        detail = poll(lambda: get_run(client, run_id), lambda d: d["run"]["status"] != "running")
        assert detail["run"]["status"] == "succeeded"
        assert job_status(detail, "notify-failure") == "skipped"
        assert detail["job_summary"]["succeeded"] == 6
        assert detail["run"]["parent_run_id"] is None
        build = next(j for j in detail["jobs"] if j["name"] == "build")
        assert build["display_name"] is None
        assert build["call"] is None and build["child_run_id"] is None

        again = client.post(f"{API}/approvals/{request['request_id']}/approve", json={"actor": "bob"})
        assert again.status_code == 409

        timeline = client.get(f"{API}/runs/{run_id}/timeline").json()
        types = [e["event_type"] for e in timeline["events"]]
        assert types[0] == "run_created"
        assert types[-1] == "run_completed"

        only_prod = client.get(f"{API}/runs/{run_id}/timeline", params={"job": "deploy-prod"}).json()
        assert all(e["job"] == "deploy-prod" for e in only_prod["events"])

        artifacts = client.get(f"{API}/runs/{run_id}/artifacts").json()
        assert {"job": "build", "key": "bundle"} in artifacts["artifacts"]

        prod = client.get(f"{API}/environments/prod").json()
        assert prod["environment"]["is_gated"] is True
        assert prod["deploy_markers"][0]["run_id"] == run_id

        runs = client.get(f"{API}/runs", params={"pipeline_id": "release"}).json()
        assert runs["total"] == 1

    def test_cancel(self, client):
        run_id = start_release(client)
        wait_for_prod_gate(client, run_id)

        response = client.post(f"{API}/runs/{run_id}/cancel", json={"actor": "bob"})
        assert response.status_code == 200
        assert response.json()["run"]["cancelled_by"] == "bob"

        detail = poll(lambda: get_run(client, run_id), lambda d: d["run"]["status"] == "cancelled")
        assert job_status(detail, "deploy-prod") == "cancelled"
        approvals = client.get(f"{API}/approvals", params={"run_id": run_id}).json()
        assert approvals["approvals"][0]["state"] == "cancelled"

        assert client.post(f"{API}/runs/{run_id}/cancel").status_code == 409

    def test_reject(self, client):
        run_id = start_release(client)
        request = wait_for_prod_gate(client, run_id)
        response = client.post(
            f"{API}/approvals/{request['request_id']}/reject",
            json={"actor": "bob", "comment": "freeze"},
        )
        assert response.json()["state"] == "rejected"
        detail = poll(lambda: get_run(client, run_id), lambda d: d["run"]["status"] != "running")
        assert detail["run"]["status"] == "failed"
        prod_job = next(j for j in detail["jobs"] if j["name"] == "deploy-prod")
        assert prod_job["failure_cause"] == "approval"

    def test_unknown_run(self, client):
        assert client.get(f"{API}/runs/run-missing").status_code == 404
        assert client.get(f"{API}/runs/run-missing/timeline").status_code == 404
        assert client.get(f"{API}/runs/run-missing/artifacts").status_code == 404
        assert client.post(f"{API}/runs/run-missing/cancel").status_code == 404

    def test_unknown_approval(self, client):
        assert client.get(f"{API}/approvals/nope").status_code == 404
        response = client.post(f"{API}/approvals/nope/approve", json={"actor": "alice"})
        assert response.status_code == 404


class TestEnvironments:

    def test_list(self, client):
        body = client.get(f"{API}/environments").json()
        assert body["total"] == 2
        gated = {e["name"]: e["is_gated"] for e in body["environments"]}
        assert gated == {"staging": False, "prod": True}

    def test_missing(self, client):
        assert client.get(f"{API}/environments/moon").status_code == 404
