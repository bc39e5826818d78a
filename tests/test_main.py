from fastapi.testclient import TestClient

import main
from app.services.errors import RateLimited, SignatureInvalid, ValidationError


class StubHandler:
    def __init__(self, ack="IGNORED", error=None):
        self.ack = ack
        self.error = error
        self.calls = []

    async def handle(self, raw_body, signature, url, source):
        self.calls.append((raw_body, signature, url, source))
        if self.error:
            raise self.error
        return self.ack


def _client(handler):
    main.app.dependency_overrides[main.get_webhook_handler] = lambda: handler
    return TestClient(main.app)


def teardown_function():
    main.app.dependency_overrides.clear()


def test_webhook_returns_empty_twiml_with_ack_header():
    handler = StubHandler(ack="STATUS_UPDATED")
    resp = _client(handler).post(
        "/v1/sms/twilio",
        content=b"MessageSid=SM1&From=%2B12125551234&Body=STOP",
        headers={"X-Twilio-Signature": "sig", "Content-Type": "application/x-www-form-urlencoded"},
    )

    assert resp.status_code == 200
    assert resp.headers["x-webhook-ack"] == "STATUS_UPDATED"
    assert resp.headers["content-type"].startswith("application/xml")
    assert "<Response" in resp.text
    assert "<Message>" not in resp.text
    raw_body, signature, url, _ = handler.calls[0]
    assert raw_body == b"MessageSid=SM1&From=%2B12125551234&Body=STOP"
    assert signature == "sig"
    assert url.endswith("/v1/sms/twilio")


def test_webhook_error_mapping():
    cases = [
        (RateLimited("src:testclient", 20), 429),
        (SignatureInvalid("bad"), 403),
        (ValidationError("bad form"), 400),
    ]
    for error, expected in cases:
        resp = _client(StubHandler(error=error)).post("/v1/sms/twilio", content=b"x=1")
        assert resp.status_code == expected


def test_healthz():
    assert TestClient(main.app).get("/healthz").text == "OK"


def test_keyword_acks_reply_with_twiml_confirmation():
    client = _client(StubHandler(ack="OPTED_OUT"))
    resp = client.post("/v1/sms/twilio", content=b"MessageSid=SM1&Body=STOP")
    assert resp.status_code == 200
    assert "<Message>You have successfully opted out of SMS notifications." in resp.text
    assert "Reply START to opt back in.</Message>" in resp.text

    resp = _client(StubHandler(ack="OPTED_IN")).post("/v1/sms/twilio", content=b"MessageSid=SM2&Body=START")
    assert "opted back into SMS notifications" in resp.text

    resp = _client(StubHandler(ack="HELP")).post("/v1/sms/twilio", content=b"MessageSid=SM3&Body=HELP")
    assert "Reply STOP to opt out, START to opt in" in resp.text


def test_ignored_messages_get_empty_twiml():
    resp = _client(StubHandler(ack="IGNORED")).post("/v1/sms/twilio", content=b"MessageSid=SM4&Body=hi")
    assert resp.headers["x-webhook-ack"] == "IGNORED"
    assert "<Message>" not in resp.text


def test_metrics_endpoint_exposes_sms_collectors():
    resp = TestClient(main.app).get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "sms_opt_out_total" in resp.text
    assert "sms_processing_duration_seconds" in resp.text
