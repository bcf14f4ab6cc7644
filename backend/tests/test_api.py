"""
HTTP API 测试

通过 ASGITransport 调用 FastAPI 应用，运行时使用进程内存储，不触发 lifespan。
"""
import pytest

from guardian.healing.models import TargetSnapshot

COMMENT_VIEW = "src/components/CommentView.js"

XSS_EVENT = {"message": "Unsafe innerHTML assignment in CommentView", "file_path": COMMENT_VIEW}
PHI_EVENT = {
    "message": "patient ssn 123-45-6789 logged to console by IntakeForm",
    "resource_hint": "logs/intake.log",
}


# ── 认证 ──────────────────────────────────────────────────────────────

class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, client):
        resp = await client.get("/api/v1/agent/status")
        assert resp.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, client):
        resp = await client.get("/api/v1/agent/status", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "http_error"


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["audit"]["halted"] is False


# ── 事件提交 ──────────────────────────────────────────────────────────

class TestIssueEvents:
    @pytest.mark.asyncio
    async def test_submit_event_heals(self, client, auth_headers, targets):
        resp = await client.post("/api/v1/issues/events", json=XSS_EVENT, headers=auth_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["stage"] == "applied"
        assert body["strategy"] == "sanitize_unsafe_input"
        assert body["category"] == "security_vulnerability"
        assert len(body["entry_ids"]) == 5
        assert "sanitizeHtml" in targets.get(COMMENT_VIEW).content

    @pytest.mark.asyncio
    async def test_invalid_event_is_422(self, client, auth_headers):
        resp = await client.post("/api/v1/issues/events", json={"stack": "no message"}, headers=auth_headers)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_batch_keeps_order(self, client, auth_headers):
        events = [XSS_EVENT, {"message": "slow query on appointments took 4200ms"}]
        resp = await client.post("/api/v1/issues/events/batch", json={"events": events}, headers=auth_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert [r["stage"] for r in body] == ["applied", "rejected"]
        assert body[1]["signature_id"] == "slow-query"

    @pytest.mark.asyncio
    async def test_empty_batch_is_422(self, client, auth_headers):
        resp = await client.post("/api/v1/issues/events/batch", json={"events": []}, headers=auth_headers)
        assert resp.status_code == 422


# ── 人工审批 ──────────────────────────────────────────────────────────

class TestReviews:
    @pytest.mark.asyncio
    async def test_approval_flow(self, client, auth_headers, targets):
        targets.put(TargetSnapshot(resource="logs/intake.log", content="INFO intake ssn=123-45-6789\n"))
        submitted = (await client.post("/api/v1/issues/events", json=PHI_EVENT, headers=auth_headers)).json()
        assert submitted["stage"] == "needs_approval"
        issue_id = submitted["issue_id"]

        listed = (await client.get("/api/v1/reviews", headers=auth_headers)).json()
        assert [t["issue_id"] for t in listed] == [issue_id]
        assert listed[0]["strategy"] == "redact_sensitive_log_field"
        assert "123-45-6789" not in listed[0]["summary"]

        resp = await client.post(
            f"/api/v1/reviews/{issue_id}/resolve",
            json={"approve": True, "approver_id": "dr.chen", "note": "verified"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["stage"] == "applied"
        assert "123-45-6789" not in targets.get("logs/intake.log").content
        assert (await client.get("/api/v1/reviews", headers=auth_headers)).json() == []

        again = await client.post(
            f"/api/v1/reviews/{issue_id}/resolve",
            json={"approve": False, "approver_id": "dr.chen"},
            headers=auth_headers,
        )
        assert again.status_code == 409
        assert again.json()["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_reject(self, client, auth_headers, targets):
        targets.put(TargetSnapshot(resource="logs/intake.log", content="INFO intake ssn=123-45-6789\n"))
        issue_id = (await client.post("/api/v1/issues/events", json=PHI_EVENT, headers=auth_headers)).json()["issue_id"]
        resp = await client.post(
            f"/api/v1/reviews/{issue_id}/resolve",
            json={"approve": False, "approver_id": "dr.chen", "note": "log already purged"},
            headers=auth_headers,
        )
        assert resp.json()["stage"] == "rejected"
        assert "log already purged" in resp.json()["reason"]

    @pytest.mark.asyncio
    async def test_unknown_issue_is_404(self, client, auth_headers):
        resp = await client.post(
            "/api/v1/reviews/issue-missing/resolve",
            json={"approve": True, "approver_id": "dr.chen"},
            headers=auth_headers,
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"


# ── 审计日志 ──────────────────────────────────────────────────────────

class TestAuditLog:
    @pytest.mark.asyncio
    async def test_query_by_issue_and_stage(self, client, auth_headers):
        issue_id = (await client.post("/api/v1/issues/events", json=XSS_EVENT, headers=auth_headers)).json()["issue_id"]

        page = (await client.get("/api/v1/audit-log", params={"issue_id": issue_id}, headers=auth_headers)).json()
        assert page["count"] == 5
        assert [e["stage"] for e in page["items"]] == [
            "classified", "auto_eligible", "gated", "sandboxed", "applied",
        ]
        assert page["items"][1]["prev_hash"] == page["items"][0]["entry_hash"]

        applied = (await client.get("/api/v1/audit-log", params={"stage": "applied"}, headers=auth_headers)).json()
        assert applied["count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_filter_is_422(self, client, auth_headers):
        resp = await client.get("/api/v1/audit-log", params={"severity": "catastrophic"}, headers=auth_headers)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_query_store_down_is_503(self, client, auth_headers, audit_store):
        audit_store.available = False
        resp = await client.get("/api/v1/audit-log", headers=auth_headers)
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_verify_chain(self, client, auth_headers):
        await client.post("/api/v1/issues/events", json=XSS_EVENT, headers=auth_headers)
        report = (await client.get("/api/v1/audit-log/verify", headers=auth_headers)).json()
        assert report["valid"] is True
        assert report["checked"] == 5


# ── Agent 运维 ────────────────────────────────────────────────────────

class TestAgentOps:
    @pytest.mark.asyncio
    async def test_status(self, client, auth_headers):
        await client.post("/api/v1/issues/events", json=XSS_EVENT, headers=auth_headers)
        body = (await client.get("/api/v1/agent/status", headers=auth_headers)).json()
        assert body["policy_version"] == 1
        assert body["metrics"]["issues_healed"] == 1
        assert "sanitize_unsafe_input" in body["strategies"]
        assert body["audit"]["sequence"] == 5
        assert body["recent_alerts"] == []

    @pytest.mark.asyncio
    async def test_reload_without_policy_file_is_422(self, client, auth_headers):
        resp = await client.post("/api/v1/agent/policy/reload", headers=auth_headers)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_reload_policy_file(self, client, auth_headers, runtime, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("version: 2\nfanout_threshold: 1\n", encoding="utf-8")
        runtime.settings.policy_file = str(path)

        resp = await client.post("/api/v1/agent/policy/reload", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json() == {"previous_version": 1, "version": 2}
        assert runtime.agent.policy.fanout_threshold == 1

        stale = await client.post("/api/v1/agent/policy/reload", headers=auth_headers)
        assert stale.status_code == 409
        assert stale.json()["error"] == "policy_version"

    @pytest.mark.asyncio
    async def test_resume_after_overflow(self, client, auth_headers, runtime, audit_store):
        runtime.audit.buffer_size = 1
        audit_store.available = False
        result = (await client.post("/api/v1/issues/events", json=XSS_EVENT, headers=auth_headers)).json()
        assert result["stage"] == "failed"
        assert (await client.get("/health")).json()["status"] == "degraded"

        audit_store.available = True
        resp = await client.post("/api/v1/agent/audit/resume", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["halted"] is False
        assert resp.json()["buffered"] == 0
        assert (await client.get("/health")).json()["status"] == "ok"
