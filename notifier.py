"""Change notifications: email, Slack, Microsoft Teams and generic webhooks.

Every channel is a single POST. Channels are independent: one failing never
blocks, retries or rolls back another.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from failure_policy import DELIVERY_POLICY, FailurePolicy

log = logging.getLogger("soa_monitor")

CHANNELS = ("email", "slack", "teams", "webhook")
TEST_CHANNELS = ("slack", "teams", "webhook")

CHANGE_EVENT = "dnswatcher_change"
TEST_EVENT = "dnswatcher_test"

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ChangeEvent:
    zone_id: int
    zone_name: str
    old_serial: int | None
    new_serial: int
    soa: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DeliveryResult:
    channel: str
    ok: bool
    status: int | None = None
    error: str = ""
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"channel": self.channel, "ok": self.ok,
                               "attempts": self.attempts}
        if self.status is not None:
            out["status"] = self.status
        if self.error:
            out["error"] = self.error
        return out

# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def login_url(app_url: str) -> str:
    return f"{app_url.rstrip('/')}/?login=true"


def format_message(event: ChangeEvent, link: str) -> tuple[str, str]:
    """Title and plain-text body shared by the chat channels."""
    soa = event.soa
    title = f"\U0001F6A8 DNS Change Detected: {event.zone_name}"
    prev = (f"Previous Serial: {event.old_serial}" if event.old_serial is not None
            else "Previous Serial: Not available")
    when = event.occurred_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [
        f"Zone: {event.zone_name}",
        prev,
        f"New Serial: {event.new_serial}",
        f"Primary Nameserver: {soa.get('primary', '')}",
        f"Admin Email: {soa.get('admin', '')}",
        f"Refresh: {soa.get('refresh')}s | Retry: {soa.get('retry')}s | "
        f"Expire: {soa.get('expire')}s",
        f"Detected At: {when}",
        f"\n\U0001F517 View full details: {link}",
    ]
    return title, f"{title}\n\n" + "\n".join(lines)


def slack_payload(text: str) -> dict[str, Any]:
    return {"text": text}


def teams_payload(title: str, text: str, link: str,
                  theme_color: str = "FF0000") -> dict[str, Any]:
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": title,
        "themeColor": theme_color,
        "title": title,
        "text": text,
        "potentialAction": [{
            "@type": "OpenUri",
            "name": "View in DNSWatcher",
            "targets": [{"os": "default", "uri": link}],
        }],
    }


def webhook_payload(event: ChangeEvent, link: str) -> dict[str, Any]:
    return {
        "event": CHANGE_EVENT,
        "zone": event.zone_name,
        "old_serial": event.old_serial,
        "new_serial": event.new_serial,
        "soa": event.soa,
        "occurred_at": event.occurred_at.astimezone(timezone.utc).isoformat(),
        "login_url": link,
    }


def email_payload(event: ChangeEvent) -> dict[str, Any]:
    return {
        "zone_id": event.zone_id,
        "change_type": "soa_change",
        "soa_record": event.soa,
        "old_serial": event.old_serial,
        "new_serial": event.new_serial,
        "zone_name": event.zone_name,
    }


def enabled_targets(prefs: dict[str, Any], email_url: str = "") -> dict[str, str]:
    """Map channel -> destination URL for every enabled, configured channel."""
    targets: dict[str, str] = {}
    if email_url and prefs.get("email_enabled", True):
        targets["email"] = email_url
    for channel, key in (("slack", "webhookUrl"), ("teams", "webhookUrl"),
                         ("webhook", "endpoint")):
        conf = prefs.get(channel) or {}
        if isinstance(conf, dict) and conf.get("enabled") and conf.get(key):
            targets[channel] = conf[key]
    return targets

# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

async def post_json(client: httpx.AsyncClient, channel: str, url: str,
                    payload: dict[str, Any], headers: dict[str, str] | None = None,
                    policy: FailurePolicy = DELIVERY_POLICY) -> DeliveryResult:
    """POST payload as JSON; never raises for transport or HTTP errors."""
    result = DeliveryResult(channel, False)
    for attempt in range(1, policy.attempts + 1):
        result.attempts = attempt
        try:
            resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            result.status, result.error = None, f"{type(e).__name__}: {e}"[:200]
            continue
        result.status = resp.status_code
        if resp.is_success:
            result.ok, result.error = True, ""
            return result
        result.error = f"HTTP {resp.status_code}"
    return result


class Dispatcher:
    """Fans one verified change out to a user's enabled channels."""

    def __init__(self, client: httpx.AsyncClient, app_url: str, *,
                 email_url: str = "", email_token: str = "",
                 policy: FailurePolicy = DELIVERY_POLICY) -> None:
        self.client = client
        self.app_url = app_url
        self.email_url = email_url
        self.email_token = email_token
        self.policy = policy

    def _jobs(self, event: ChangeEvent, prefs: dict[str, Any]
              ) -> list[tuple[str, str, dict[str, Any], dict[str, str] | None]]:
        link = login_url(self.app_url)
        title, text = format_message(event, link)
        jobs = []
        for channel, url in enabled_targets(prefs, self.email_url).items():
            headers = None
            if channel == "email":
                payload = email_payload(event)
                if self.email_token:
                    headers = {"Authorization": f"Bearer {self.email_token}"}
            elif channel == "slack":
                payload = slack_payload(text)
            elif channel == "teams":
                payload = teams_payload(title, text, link)
            else:
                payload = webhook_payload(event, link)
            jobs.append((channel, url, payload, headers))
        return jobs

    async def dispatch(self, event: ChangeEvent,
                       prefs: dict[str, Any]) -> list[DeliveryResult]:
        jobs = self._jobs(event, prefs)
        if not jobs:
            log.info(f"  {event.zone_name}: no notification channels enabled")
            return []

        if self.policy.continue_on_failure:
            results = list(await asyncio.gather(*(
                post_json(self.client, ch, url, payload, headers, self.policy)
                for ch, url, payload, headers in jobs)))
        else:
            results = []
            for ch, url, payload, headers in jobs:
                r = await post_json(self.client, ch, url, payload, headers, self.policy)
                results.append(r)
                if not r.ok:
                    break

        for r in results:
            if r.ok:
                log.info(f"  NOTIFY {r.channel}: {event.zone_name} serial={event.new_serial} sent")
            else:
                log.warning(f"  NOTIFY {r.channel}: {event.zone_name} "
                            f"serial={event.new_serial} FAILED ({r.error})")
        return results


async def send_test_notification(client: httpx.AsyncClient, channel: str,
                                 url: str) -> DeliveryResult:
    """Send the 'channel configured' message used when a user sets up a channel."""
    if channel == "slack":
        payload = {"text": "✅ DNSWatcher: Notification channel configured successfully!\n"
                           "You'll now receive alerts here when your DNS zones change."}
    elif channel == "teams":
        payload = {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": "DNSWatcher setup",
            "themeColor": "2F80ED",
            "title": "DNSWatcher: Notification channel configured",
            "text": "✅ You'll now receive alerts here when your DNS zones change.",
        }
    elif channel == "webhook":
        payload = {
            "event": TEST_EVENT,
            "product": "DNSWatcher",
            "message": "Notification channel configured successfully.",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    else:
        raise ValueError(f"unknown channel: {channel}")
    return await post_json(client, channel, url, payload)
