import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from anomalisa import config, notify
from anomalisa.schemas import Anomaly, Metric

AT = datetime(2026, 1, 1, 5, 0, tzinfo=timezone.utc)


def make_anomaly(metric=Metric.TOTAL_COUNT, user_id=None, z_score=4.2):
    return Anomaly(
        project_id="p1",
        event_name="signup",
        bucket="2026-01-01T04",
        expected=4.0,
        actual=50,
        z_score=z_score,
        detected_at=AT,
        metric=metric,
        user_id=user_id,
    )


class Recorder:
    def __init__(self, status=200):
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": True})


def test_subject_and_text_mention_user_only_when_present():
    plain = make_anomaly()
    assert notify.subject_line(plain) == "[anomalisa] Total Count: signup"
    assert "user" not in notify.anomaly_text(plain)

    spike = make_anomaly(Metric.USER_SPIKE, user_id="u-7")
    assert notify.subject_line(spike) == "[anomalisa] User Spike: signup (u-7)"
    assert "(user: u-7)" in notify.anomaly_text(spike)


def test_percentage_spike_is_labelled_as_a_change():
    pct = make_anomaly(Metric.PERCENTAGE_SPIKE, z_score=1.5)
    assert notify.subject_line(pct) == "[anomalisa] Percentage Spike: signup"
    assert "change=+150%" in notify.anomaly_text(pct)


def test_html_is_escaped():
    a = make_anomaly(Metric.USER_SPIKE, user_id="<script>")
    body = notify.anomaly_html(a)
    assert "<script>" not in body
    assert "&lt;script&gt;" in body


async def test_webhook_posts_wire_form():
    rec = Recorder()
    async with httpx.AsyncClient(transport=httpx.MockTransport(rec)) as client:
        await notify.send_webhook(client, "https://hooks.example.com/x", make_anomaly())

    (req,) = rec.requests
    assert str(req.url) == "https://hooks.example.com/x"
    body = json.loads(req.content)
    assert body["projectId"] == "p1"
    assert body["metric"] == "totalCount"
    assert "userId" not in body


async def test_email_uses_basic_auth_and_domain():
    rec = Recorder()
    async with httpx.AsyncClient(transport=httpx.MockTransport(rec)) as client:
        await notify.send_anomaly_alert(
            client, "owner@example.com", make_anomaly(), api_key="k3y", email_domain="example.org"
        )

    (req,) = rec.requests
    assert str(req.url) == notify.FORWARD_EMAIL_URL
    assert req.headers["authorization"] == "Basic " + base64.b64encode(b"k3y:").decode()
    body = json.loads(req.content)
    assert body["from"] == "alerts@example.org"
    assert body["to"] == "owner@example.com"
    assert body["subject"] == "[anomalisa] Total Count: signup"


async def test_dispatch_sends_to_both_channels(monkeypatch):
    monkeypatch.setattr(config, "FORWARD_EMAIL_API_KEY", "k3y")
    rec = Recorder()
    async with httpx.AsyncClient(transport=httpx.MockTransport(rec)) as client:
        delivered = await notify.dispatch_anomalies(
            client,
            [make_anomaly(), make_anomaly(Metric.USER_SPIKE, user_id="u1")],
            owner_email="owner@example.com",
            webhook_url="https://hooks.example.com/x",
        )
    assert delivered == 4
    assert len(rec.requests) == 4


async def test_dispatch_skips_email_without_api_key(monkeypatch):
    monkeypatch.setattr(config, "FORWARD_EMAIL_API_KEY", "")
    rec = Recorder()
    async with httpx.AsyncClient(transport=httpx.MockTransport(rec)) as client:
        delivered = await notify.dispatch_anomalies(
            client, [make_anomaly()], owner_email="owner@example.com", webhook_url=None
        )
    assert delivered == 0
    assert rec.requests == []


async def test_dispatch_logs_and_swallows_delivery_errors(monkeypatch, caplog):
    monkeypatch.setattr(config, "FORWARD_EMAIL_API_KEY", "k3y")
    rec = Recorder(status=500)
    async with httpx.AsyncClient(transport=httpx.MockTransport(rec)) as client:
        delivered = await notify.dispatch_anomalies(
            client, [make_anomaly()], owner_email="owner@example.com", webhook_url="https://hooks.example.com/x"
        )
    assert delivered == 0
    assert len(rec.requests) == 2
    assert "webhook failed" in caplog.text


@pytest.mark.parametrize("metric, label", [
    (Metric.TOTAL_COUNT, "Total Count"),
    (Metric.USER_SPIKE, "User Spike"),
    (Metric.PERCENTAGE_SPIKE, "Percentage Spike"),
])
def test_metric_labels(metric, label):
    assert notify.metric_label(metric) == label
