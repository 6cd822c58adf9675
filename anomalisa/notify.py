"""
Outbound anomaly notifications: owner email (Forward Email API) and the
project's webhook. Delivery failures are logged and never raised; ingestion
has already succeeded by the time these run.
"""
from __future__ import annotations

import html
import logging
from typing import Iterable, Optional

import httpx

from . import config
from .schemas import Anomaly, Metric

logger = logging.getLogger("anomalisa.notify")

FORWARD_EMAIL_URL = "https://api.forwardemail.net/v1/emails"

_METRIC_LABELS = {
    Metric.TOTAL_COUNT: "Total Count",
    Metric.USER_SPIKE: "User Spike",
    Metric.PERCENTAGE_SPIKE: "Percentage Spike",
}


def metric_label(metric: Metric) -> str:
    return _METRIC_LABELS.get(metric, str(metric.value))


def _score_label(anomaly: Anomaly) -> str:
    if anomaly.metric == Metric.PERCENTAGE_SPIKE:
        return f"change={anomaly.z_score:+.0%}"
    return f"z={anomaly.z_score}"


def subject_line(anomaly: Anomaly) -> str:
    user = f" ({anomaly.user_id})" if anomaly.user_id else ""
    return f"[anomalisa] {metric_label(anomaly.metric)}: {anomaly.event_name}{user}"


def anomaly_text(anomaly: Anomaly) -> str:
    user = f" (user: {anomaly.user_id})" if anomaly.user_id else ""
    return (
        f"{metric_label(anomaly.metric)} Anomaly: {anomaly.event_name}{user} in {anomaly.bucket}"
        f": expected {anomaly.expected}, got {anomaly.actual} ({_score_label(anomaly)})"
    )


def anomaly_html(anomaly: Anomaly) -> str:
    e = html.escape
    user_cell = f"<td>{e(anomaly.user_id)}</td>" if anomaly.user_id else '<td class="muted">-</td>'
    return (
        "<h2>Anomaly Detected</h2>\n"
        '<table border="1" cellpadding="8" cellspacing="0">\n'
        "  <tr><th>Type</th><th>Event</th><th>User</th><th>Bucket</th>"
        "<th>Expected</th><th>Actual</th><th>Score</th></tr>\n"
        f"  <tr><td>{e(metric_label(anomaly.metric))}</td><td>{e(anomaly.event_name)}</td>{user_cell}"
        f"<td>{e(anomaly.bucket)}</td><td>{anomaly.expected}</td><td>{anomaly.actual}</td>"
        f"<td>{e(_score_label(anomaly))}</td></tr>\n"
        "</table>"
    )


async def send_anomaly_alert(
    client: httpx.AsyncClient,
    to_email: str,
    anomaly: Anomaly,
    *,
    api_key: Optional[str] = None,
    email_domain: Optional[str] = None,
) -> httpx.Response:
    api_key = config.FORWARD_EMAIL_API_KEY if api_key is None else api_key
    email_domain = config.EMAIL_DOMAIN if email_domain is None else email_domain
    resp = await client.post(
        FORWARD_EMAIL_URL,
        auth=(api_key, ""),
        json={
            "from": f"alerts@{email_domain}",
            "to": to_email,
            "subject": subject_line(anomaly),
            "html": anomaly_html(anomaly),
            "text": anomaly_text(anomaly),
            "encoding": "utf-8",
        },
    )
    resp.raise_for_status()
    return resp


async def send_webhook(client: httpx.AsyncClient, url: str, anomaly: Anomaly) -> httpx.Response:
    resp = await client.post(url, json=anomaly.to_wire())
    resp.raise_for_status()
    return resp


async def dispatch_anomalies(
    client: httpx.AsyncClient,
    anomalies: Iterable[Anomaly],
    *,
    owner_email: Optional[str] = None,
    webhook_url: Optional[str] = None,
) -> int:
    """
    Deliver each anomaly to the owner's inbox and the webhook, when set.
    Returns the number of deliveries that succeeded.
    """
    delivered = 0
    for anomaly in anomalies:
        if owner_email and config.FORWARD_EMAIL_API_KEY:
            try:
                await send_anomaly_alert(client, owner_email, anomaly)
                delivered += 1
            except httpx.HTTPError:
                logger.exception("email alert failed for %s/%s", anomaly.project_id, anomaly.event_name)
        if webhook_url:
            try:
                await send_webhook(client, webhook_url, anomaly)
                delivered += 1
            except httpx.HTTPError:
                logger.exception("webhook failed for %s/%s -> %s", anomaly.project_id, anomaly.event_name, webhook_url)
    return delivered
