from flask import Flask

from billing_sync.security import init_security


def test_json_only_security_headers():
    app = Flask(__name__)
    app.config["FORCE_HTTPS"] = False
    init_security(app)

    @app.get("/ping")
    def ping():
        return {"ok": True}

    resp = app.test_client().get("/ping")

    assert resp.status_code == 200
    assert "default-src 'none'" in resp.headers["Content-Security-Policy"]
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Referrer-Policy"] == "no-referrer"


def test_sentry_drops_webhook_bodies():
    from billing_sync.observability import _scrub_webhook_bodies

    webhook = {"request": {"url": "https://billing.example.test/webhooks/stripe", "data": {"id": "evt_1"}}}
    admin = {"request": {"url": "https://billing.example.test/admin/webhooks/stats", "data": "ok"}}

    assert "data" not in _scrub_webhook_bodies(webhook, None)["request"]
    assert _scrub_webhook_bodies(admin, None)["request"]["data"] == "ok"
