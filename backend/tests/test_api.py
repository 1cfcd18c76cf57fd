"""
HTTP surface tests.

Test Coverage:
1. Cancel widget: mint link, fetch, survey, offer, complete, error screens
2. Widget rate limiting per client IP (X-Forwarded-For only from trusted proxies)
3. Offer config publish/read
4. Recovery operator routes: create, list, detail, actions, expire, stats, revenue
5. Admin simulate-recovery (idempotent, role-gated)
6. Internal scheduler routes: key check, recompute rate limit, expiry sweep, recovery notices
7. Billing webhook: secret check, exactly-once delivery
8. Risk snapshot routes
"""
from app import dependencies
from app.models.db_models import LedgerEntryDB, RecoveryCaseDB, RecoveryCaseStatus
from app.routers.scheduler import INTERNAL_API_KEY
from app.routers.webhooks import BILLING_WEBHOOK_SECRET
from app.services.rate_limit import FixedWindowRateLimiter

from conftest import auth_headers


DISCOUNT_CONFIG = {
    "offer_settings": {
        "default_offer": "none",
        "reason_mappings": {
            "too_expensive": {"offer_type": "discount", "discount_percentage": 20, "discount_duration_months": 3},
        },
    },
}

INTERNAL_HEADERS = {"X-Internal-Key": INTERNAL_API_KEY}
WEBHOOK_HEADERS = {"X-Webhook-Secret": BILLING_WEBHOOK_SECRET}


def mint_token(client, account, configure=True):
    headers = auth_headers(account)
    if configure:
        assert client.put("/offer-config", json=DISCOUNT_CONFIG, headers=headers).status_code == 200
    response = client.post("/cancel-session", json={"customer_id": "cus_1"}, headers=headers)
    assert response.status_code == 200
    return response.json()["session_token"]


def open_case(client, account, invoice="in_1", amount=49):
    response = client.post(
        "/recovery/cases",
        json={"customer_reference": "cus_1", "amount_at_risk": amount, "invoice_reference": invoice},
        headers=auth_headers(account),
    )
    assert response.status_code == 200
    return response.json()


# =============================================================================
# CANCEL WIDGET
# =============================================================================

class TestCancelWidget:

    def test_mint_link(self, client, account):
        response = client.post("/cancel-session", json={}, headers=auth_headers(account))
        body = response.json()

        assert response.status_code == 200
        assert body["cancel_url"].endswith(body["session_token"])
        assert "expires_at" in body

    def test_full_save_flow(self, client, account):
        token = mint_token(client, account)

        fetched = client.get(f"/cancel-session/{token}").json()
        assert fetched["session"]["status"] == "survey_pending"
        assert fetched["session"]["step"] == "survey"
        assert "offer_settings" not in fetched["config"]

        survey = client.post(f"/cancel-session/{token}/survey", json={"exit_reason": "too_expensive"}).json()
        assert survey["session"]["status"] == "offer_presented"
        assert survey["offer"] == {"type": "discount", "percentage": 20, "duration_months": 3}

        reloaded = client.get(f"/cancel-session/{token}").json()
        assert reloaded["session"]["step"] == "offer"

        accepted = client.post(f"/cancel-session/{token}/offer", json={"accepted": True}).json()
        assert accepted["session"]["status"] == "saved"
        assert accepted["session"]["offer_accepted"] is True

        repeated = client.post(f"/cancel-session/{token}/offer", json={"accepted": True})
        assert repeated.status_code == 200
        assert repeated.json()["session"]["status"] == "saved"
        assert repeated.json()["transitioned"] is False

    def test_no_offer_reason_cancels(self, client, account):
        token = mint_token(client, account)
        client.get(f"/cancel-session/{token}")

        body = client.post(f"/cancel-session/{token}/survey", json={"exit_reason": "need_a_break"}).json()
        assert body["session"]["status"] == "cancelled"
        assert body["offer"] is None

    def test_complete_abandoned(self, client, account):
        token = mint_token(client, account)
        client.get(f"/cancel-session/{token}")

        body = client.post(f"/cancel-session/{token}/complete", json={"action": "abandoned"}).json()
        assert body["session"]["status"] == "cancelled"
        assert body["session"]["completion_action"] == "abandoned"

    def test_default_config_published_on_first_link(self, client, account):
        token = mint_token(client, account, configure=False)
        body = client.get(f"/cancel-session/{token}").json()
        assert body["config"]["version"] == 1

    def test_unknown_token_shows_generic_not_found(self, client):
        response = client.get("/cancel-session/not-a-real-token")
        assert response.status_code == 404
        assert response.json() == {"error": "Session not found or expired"}

    def test_invalid_reason_is_400_without_internal_code(self, client, account):
        token = mint_token(client, account)
        client.get(f"/cancel-session/{token}")

        response = client.post(f"/cancel-session/{token}/survey", json={"exit_reason": "aliens"})
        assert response.status_code == 400
        assert "VALIDATION_ERROR" not in response.text

    def test_rate_limited_per_ip(self, app, client, monkeypatch):
        monkeypatch.setattr(dependencies, "TRUSTED_PROXIES", frozenset({"testclient"}))
        app.state.widget_limiter = FixedWindowRateLimiter(1, 60)
        client.get("/cancel-session/a", headers={"X-Forwarded-For": "10.0.0.1"})

        limited = client.get("/cancel-session/b", headers={"X-Forwarded-For": "10.0.0.1"})
        other_ip = client.get("/cancel-session/c", headers={"X-Forwarded-For": "10.0.0.2"})

        assert limited.status_code == 429
        assert limited.json() == {"error": "Too many requests. Please try again later."}
        assert int(limited.headers["Retry-After"]) > 0
        assert other_ip.status_code == 404

    def test_forwarded_for_ignored_from_untrusted_peer(self, app, client):
        app.state.widget_limiter = FixedWindowRateLimiter(1, 60)
        client.get("/cancel-session/a", headers={"X-Forwarded-For": "10.0.0.1"})

        rotated = client.get("/cancel-session/b", headers={"X-Forwarded-For": "10.0.0.2"})
        assert rotated.status_code == 429

    def test_spoofed_leading_hop_does_not_change_identity(self, app, client, monkeypatch):
        monkeypatch.setattr(dependencies, "TRUSTED_PROXIES", frozenset({"testclient"}))
        app.state.widget_limiter = FixedWindowRateLimiter(1, 60)
        client.get("/cancel-session/a", headers={"X-Forwarded-For": "10.0.0.1"})

        spoofed = client.get("/cancel-session/b", headers={"X-Forwarded-For": "1.2.3.4, 10.0.0.1"})
        assert spoofed.status_code == 429

    def test_cancel_token_is_not_an_access_token(self, client, account):
        token = mint_token(client, account)
        response = client.get("/recovery/cases", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


# =============================================================================
# OFFER CONFIG
# =============================================================================

class TestOfferConfigRoutes:

    def test_defaults_before_publish(self, client, account):
        body = client.get("/offer-config", headers=auth_headers(account)).json()
        assert body["version"] == 0
        assert body["offer_settings"]["default_offer"] == "none"

    def test_publish_creates_versions(self, client, account):
        headers = auth_headers(account)
        first = client.put("/offer-config", json=DISCOUNT_CONFIG, headers=headers).json()
        second = client.put("/offer-config", json=DISCOUNT_CONFIG, headers=headers).json()

        assert (first["version"], second["version"]) == (1, 2)
        assert client.get("/offer-config", headers=headers).json()["version"] == 2

    def test_invalid_percentage_rejected(self, client, account):
        config = {"offer_settings": {"discount_percentage": 150}}
        response = client.put("/offer-config", json=config, headers=auth_headers(account))
        assert response.status_code == 422


# =============================================================================
# RECOVERY
# =============================================================================

class TestRecoveryRoutes:

    def test_create_is_idempotent_per_invoice(self, client, account):
        first = open_case(client, account)
        second = open_case(client, account)

        assert first["created"] is True
        assert second["created"] is False
        assert second["case"]["id"] == first["case"]["id"]
        assert first["case"]["status"] == "open"
        assert first["case"]["recommendation"] == "Manual follow-up required"

    def test_list_and_stats(self, client, account):
        open_case(client, account, invoice="in_small", amount=10)
        open_case(client, account, invoice="in_large", amount=500)
        headers = auth_headers(account)

        listed = client.get("/recovery/cases", headers=headers).json()
        assert listed["count"] == 2
        assert [c["invoice_reference"] for c in listed["cases"]] == ["in_large", "in_small"]

        stats = client.get("/recovery/cases/stats", headers=headers).json()
        assert stats == {"open": 2, "recovered": 0, "expired": 0, "total": 2}

    def test_detail_actions_and_expire(self, client, account):
        case_id = open_case(client, account)["case"]["id"]
        headers = auth_headers(account)

        logged = client.post(
            f"/recovery/cases/{case_id}/actions",
            json={"action_type": "message_sent", "note": "emailed"},
            headers=headers,
        )
        assert logged.status_code == 200

        expired = client.post(f"/recovery/cases/{case_id}/expire", json={}, headers=headers).json()
        assert expired["outcome"] == "expired"

        detail = client.get(f"/recovery/cases/{case_id}", headers=headers).json()
        assert detail["status"] == "expired"
        assert detail["first_action_at"] is not None
        assert [a["action_type"] for a in detail["actions"]] == ["message_sent", "marked_expired"]
        assert detail["ledger_entries"] == []

        again = client.post(f"/recovery/cases/{case_id}/expire", json={}, headers=headers).json()
        assert again["outcome"] == "already_resolved"

    def test_transition_actions_rejected(self, client, account):
        case_id = open_case(client, account)["case"]["id"]
        response = client.post(
            f"/recovery/cases/{case_id}/actions",
            json={"action_type": "marked_recovered"},
            headers=auth_headers(account),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_other_accounts_case_not_found(self, client, account, admin_account):
        case_id = open_case(client, account)["case"]["id"]
        response = client.get(f"/recovery/cases/{case_id}", headers=auth_headers(admin_account))
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"


# =============================================================================
# ADMIN
# =============================================================================

class TestSimulateRecovery:

    def test_simulated_recovery_is_idempotent(self, client, db, account, admin_account):
        case_id = open_case(client, account)["case"]["id"]
        headers = auth_headers(admin_account)

        first = client.post("/admin/simulate-recovery", json={"case_id": case_id}, headers=headers).json()
        assert first["outcome"] == "recovered"
        assert first["case_status"] == "recovered"
        assert first["ledger_created"] is True
        assert first["source_event_id"].startswith("sim_")

        second = client.post("/admin/simulate-recovery", json={"case_id": case_id}, headers=headers).json()
        assert second["outcome"] == "already_resolved"
        assert second["ledger_created"] is False

        assert db.query(LedgerEntryDB).count() == 1
        entry = db.query(LedgerEntryDB).one()
        assert entry.notes == "Simulated recovery attribution (manual test)"

        summary = client.get("/recovery/revenue/summary", headers=auth_headers(account)).json()
        assert summary["currencies"]["USD"]["lifetime_count"] == 1

    def test_requires_admin_role(self, client, account):
        case_id = open_case(client, account)["case"]["id"]
        response = client.post("/admin/simulate-recovery", json={"case_id": case_id}, headers=auth_headers(account))
        assert response.status_code == 403

    def test_unknown_case(self, client, admin_account):
        response = client.post("/admin/simulate-recovery", json={"case_id": "missing"}, headers=auth_headers(admin_account))
        assert response.status_code == 404


# =============================================================================
# SCHEDULER
# =============================================================================

class TestSchedulerRoutes:

    def test_wrong_internal_key(self, client):
        response = client.post("/internal/recompute-risk", headers={"X-Internal-Key": "nope"})
        assert response.status_code == 403

    def test_recompute_rate_limited(self, client):
        assert client.post("/internal/recompute-risk", headers=INTERNAL_HEADERS).json() == {
            "processed": 0, "success": 0, "errors": 0,
        }
        assert client.post("/internal/recompute-risk", headers=INTERNAL_HEADERS).status_code == 200

        limited = client.post("/internal/recompute-risk", headers=INTERNAL_HEADERS)
        assert limited.status_code == 429
        assert limited.json()["error"] == "RATE_LIMITED"
        assert int(limited.headers["Retry-After"]) > 0

    def test_expire_cases(self, client, db, account):
        case_id = open_case(client, account)["case"]["id"]

        result = client.post("/internal/expire-cases", headers=INTERNAL_HEADERS).json()
        assert result["expired"] == 0
        assert db.get(RecoveryCaseDB, case_id).status == RecoveryCaseStatus.OPEN

    def test_send_recovery_notices(self, app, client, db, account):
        sent = []

        class Recorder:
            def recovery_notice(self, case, attempt):
                sent.append((case.id, attempt))

        app.state.notifier = Recorder()
        case_id = open_case(client, account)["case"]["id"]

        first = client.post("/internal/send-recovery-notices", headers=INTERNAL_HEADERS).json()
        again = client.post("/internal/send-recovery-notices", headers=INTERNAL_HEADERS).json()

        assert first["sent"] == 1
        assert again["sent"] == 0
        assert sent == [(case_id, 1)]
        db.expire_all()
        assert db.get(RecoveryCaseDB, case_id).messages_sent == 1

    def test_send_recovery_notices_requires_key(self, client):
        response = client.post("/internal/send-recovery-notices", headers={"X-Internal-Key": "nope"})
        assert response.status_code == 403


# =============================================================================
# WEBHOOKS / RISK
# =============================================================================

class TestWebhookRoutes:

    def payload(self, account, event_id="evt_fail_1"):
        return {
            "event_id": event_id,
            "type": "payment_failed",
            "account_id": account.id,
            "occurred_at": "2026-03-10T12:00:00Z",
            "data": {"invoice_id": "in_1", "customer_id": "cus_1", "amount_due": 49, "currency": "USD"},
        }

    def test_wrong_secret(self, client, account):
        response = client.post("/webhooks/billing", json=self.payload(account), headers={"X-Webhook-Secret": "nope"})
        assert response.status_code == 401

    def test_delivery_is_exactly_once(self, client, db, account):
        first = client.post("/webhooks/billing", json=self.payload(account), headers=WEBHOOK_HEADERS).json()
        second = client.post("/webhooks/billing", json=self.payload(account), headers=WEBHOOK_HEADERS).json()

        assert first["duplicate"] is False
        assert first["outcome"]["status"] == "case_opened"
        assert second["duplicate"] is True
        assert db.query(RecoveryCaseDB).count() == 1

    def test_invalid_payload_is_400(self, client, account):
        payload = self.payload(account)
        payload["data"] = {"customer_id": "cus_1"}
        response = client.post("/webhooks/billing", json=payload, headers=WEBHOOK_HEADERS)
        assert response.status_code == 400


class TestRiskRoutes:

    def test_snapshot_after_score(self, client, account):
        headers = auth_headers(account)
        assert client.get("/risk/snapshot", headers=headers).status_code == 404

        scored = client.post("/risk/score", headers=headers).json()
        assert scored == {"score": 0, "reasons": []}

        snapshot = client.get("/risk/snapshot", headers=headers).json()
        assert snapshot["score"] == 0
        assert snapshot["account_id"] == account.id
