#!/usr/bin/env python3
"""SOA Monitor - quorum-verified DNS zone change detection.

Asks several independent DNS-over-HTTPS resolvers for each due zone's SOA
record, trusts a serial only when a majority agree, re-checks a detected
change after a short delay, suppresses repeat alerts for the same serial and
fans verified changes out to email, Slack, Teams and generic webhooks.

One run is one "tick": pick the zones that are due, check each, write the
results back, return a summary. Something external (cron, the trigger
server, or --loop) decides when the next tick happens.

Usage:
    python3 soa_monitor.py                 # one tick, JSON summary on stdout
    python3 soa_monitor.py --loop 15       # a tick every 15s until Ctrl-C
    INTERVAL=30 python3 soa_monitor.py     # same loop, interval from the env
    SOA_DB_FILE=/tmp/zones.db python3 soa_monitor.py
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import os
import random
import signal
import sqlite3
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

try:
    import dns.exception
    import dns.message
    import dns.name
    import dns.rdatatype
    import httpx
except ImportError:
    print("Missing dependencies. Install with:")
    print("  pip install -e .")
    sys.exit(1)

from failure_policy import (DELIVERY_POLICY, STORE_POLICY, ConfigError,
                            FailurePolicy, PersistenceError)
from notifier import ChangeEvent, Dispatcher
from zone_store import Zone, ZoneCheckRecord, ZoneStore

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SCRIPT_DIR = Path(__file__).parent
DATA_DIR = SCRIPT_DIR / "data"
DB_FILE = DATA_DIR / "soa_monitor.db"
LOG_FILE = DATA_DIR / f"soa_monitor_{time.strftime('%Y%m%d_%H%M%S')}.log"

# Order is the tie-break priority for the consensus vote.
DEFAULT_RESOLVERS = (
    "google=https://dns.google/resolve,"
    "cloudflare=https://cloudflare-dns.com/dns-query,"
    "quad9=https://dns.quad9.net:5053/dns-query"
)
RESOLVER_FORMATS = ("json", "wire")

MIN_CADENCE = 1
MAX_CADENCE = 60
DEFAULT_CADENCE = 60
JITTER_MS = 250

CONFIRM_DELAY_MS = 200
DEDUP_WINDOW_MINUTES = 15
DEDUP_LOOKBACK = 5
NS_SHOWN = 3
SOA_FIELDS = 7

NO_QUORUM_ERROR = "Failed to get consensus from resolvers"


@dataclass(frozen=True)
class ResolverEndpoint:
    name: str
    url: str
    fmt: str = "json"


@dataclass
class MonitorConfig:
    db_file: str | Path
    resolvers: list[ResolverEndpoint]
    app_url: str = "http://localhost:3000"
    timeout: float = 5.0
    confirm_delay: float = CONFIRM_DELAY_MS / 1000
    dedup_window: timedelta = timedelta(minutes=DEDUP_WINDOW_MINUTES)
    notify_on_baseline: bool = True
    zone_concurrency: int = 1
    fetch_nameservers: bool = True
    email_function_url: str = ""
    email_function_token: str = ""
    cron_secret: str = ""
    interval: float = 0.0
    store_policy: FailurePolicy = STORE_POLICY
    delivery_policy: FailurePolicy = DELIVERY_POLICY

    def validate(self) -> None:
        if not self.resolvers:
            raise ConfigError("No DoH resolver endpoints configured")
        if not self.db_file:
            raise ConfigError("No zone store configured (SOA_DB_FILE)")
        if self.interval < 0:
            raise ConfigError(f"INTERVAL must not be negative: {self.interval}")
        for r in self.resolvers:
            if not r.url.startswith(("https://", "http://")):
                raise ConfigError(f"Resolver {r.name}: not an HTTP(S) URL: {r.url}")
            if r.fmt not in RESOLVER_FORMATS:
                raise ConfigError(f"Resolver {r.name}: unknown format {r.fmt!r}")


def parse_resolvers(text: str) -> list[ResolverEndpoint]:
    """Parse 'name=url[|format],...' into endpoints, keeping the order."""
    out: list[ResolverEndpoint] = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, rest = item.partition("=")
        if not sep or not name.strip() or not rest.strip():
            raise ConfigError(f"Bad resolver entry {item!r}, expected name=url")
        url, _, fmt = rest.partition("|")
        out.append(ResolverEndpoint(name.strip(), url.strip(), fmt.strip() or "json"))
    return out


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(env: Mapping[str, str] = os.environ) -> MonitorConfig:
    """Build the monitor configuration from environment variables."""
    try:
        cfg = MonitorConfig(
            db_file=env.get("SOA_DB_FILE", str(DB_FILE)),
            resolvers=parse_resolvers(env.get("DOH_RESOLVERS", DEFAULT_RESOLVERS)),
            app_url=env.get("APP_URL", "http://localhost:3000"),
            timeout=float(env.get("DOH_TIMEOUT", 5.0)),
            confirm_delay=int(env.get("CONFIRM_DELAY_MS", CONFIRM_DELAY_MS)) / 1000,
            dedup_window=timedelta(
                minutes=int(env.get("DEDUP_WINDOW_MINUTES", DEDUP_WINDOW_MINUTES))),
            notify_on_baseline=_env_bool(env.get("NOTIFY_ON_BASELINE"), True),
            zone_concurrency=int(env.get("ZONE_CONCURRENCY", 1)),
            fetch_nameservers=_env_bool(env.get("FETCH_NAMESERVERS"), True),
            email_function_url=env.get("EMAIL_FUNCTION_URL", ""),
            email_function_token=env.get("EMAIL_FUNCTION_TOKEN", ""),
            cron_secret=env.get("CRON_SECRET_TOKEN", ""),
            interval=float(env.get("INTERVAL", 0)),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e
    cfg.validate()
    return cfg

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SOARecord:
    primary: str
    admin: str
    serial: int
    refresh: int
    retry: int
    expire: int
    minimum: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": self.primary, "admin": self.admin, "serial": self.serial,
            "refresh": self.refresh, "retry": self.retry,
            "expire": self.expire, "minimum": self.minimum,
        }


@dataclass
class ResolverObservation:
    resolver: str
    soa: SOARecord | None
    ok: bool
    reason: str = ""
    response_time_ms: float = 0


@dataclass
class ConsensusResult:
    serial: int | None
    votes: int
    total: int
    sources: list[str] = field(default_factory=list)
    samples: list[int] = field(default_factory=list)
    soa: SOARecord | None = None
    nameservers: list[str] = field(default_factory=list)
    quorum: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "serial": self.serial, "votes": self.votes, "total": self.total,
            "sources": self.sources, "samples": self.samples,
            "quorum": self.quorum,
        }

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

log = logging.getLogger("soa_monitor")


def setup_logging() -> logging.Logger:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    log.setLevel(logging.INFO)
    if log.handlers:
        return log
    fmt = logging.Formatter("[%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    fh = logging.FileHandler(LOG_FILE)
    fh.setFormatter(fmt)
    log.addHandler(fh)

    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(fmt)
    log.addHandler(ch)

    return log

# ---------------------------------------------------------------------------
# Resolver client
# ---------------------------------------------------------------------------

def normalize_zone(zone: str) -> str:
    """Lowercase zone name without the trailing dot; raises on invalid names."""
    if not zone or not zone.strip():
        raise ValueError("empty zone name")
    return dns.name.from_text(zone.strip()).to_text(omit_final_dot=True).lower()


def parse_soa(data: str) -> SOARecord | None:
    """Parse 'primary admin serial refresh retry expire minimum'."""
    parts = str(data).split()
    if len(parts) < SOA_FIELDS:
        return None
    try:
        nums = [int(p) for p in parts[2:SOA_FIELDS]]
    except ValueError:
        return None
    if any(n < 0 for n in nums):
        return None
    return SOARecord(parts[0], parts[1], *nums)


def soa_from_json(payload: dict[str, Any]) -> SOARecord | None:
    """SOA from a dns-json body: Answer first, then Authority (negative answers)."""
    for section in ("Answer", "Authority"):
        records = payload.get(section) or []
        if not records:
            continue
        rec = next((r for r in records if r.get("type") == dns.rdatatype.SOA),
                   records[0])
        soa = parse_soa(rec.get("data", ""))
        if soa:
            return soa
    return None


def soa_from_wire(content: bytes) -> SOARecord | None:
    resp = dns.message.from_wire(content)
    for rrset in list(resp.answer) + list(resp.authority):
        if rrset.rdtype == dns.rdatatype.SOA:
            for rdata in rrset:
                soa = parse_soa(rdata.to_text())
                if soa:
                    return soa
    return None


async def _doh_request(client: httpx.AsyncClient, endpoint: ResolverEndpoint,
                       zone: str, rdtype: str, timeout: float) -> httpx.Response:
    if endpoint.fmt == "wire":
        q = dns.message.make_query(zone, rdtype)
        return await client.post(
            endpoint.url, content=q.to_wire(), timeout=timeout,
            headers={"Content-Type": "application/dns-message",
                     "Accept": "application/dns-message"})
    return await client.get(
        endpoint.url, params={"name": zone, "type": rdtype}, timeout=timeout,
        headers={"Accept": "application/dns-json"})


async def query_soa(client: httpx.AsyncClient, endpoint: ResolverEndpoint,
                    zone: str, timeout: float = 5.0) -> ResolverObservation:
    """Ask one DoH endpoint for the zone's SOA. Never raises."""
    start = time.monotonic()

    def failed(reason: str) -> ResolverObservation:
        return ResolverObservation(endpoint.name, None, False, reason,
                                   (time.monotonic() - start) * 1000)

    try:
        resp = await _doh_request(client, endpoint, zone, "SOA", timeout)
        if not resp.is_success:
            return failed(f"HTTP_ERROR {resp.status_code}")
        if endpoint.fmt == "wire":
            soa = soa_from_wire(resp.content)
        else:
            soa = soa_from_json(resp.json())
    except httpx.TimeoutException:
        return failed("TIMEOUT")
    except httpx.HTTPError as e:
        return failed(f"FAIL {str(e)[:80]}")
    except (ValueError, AttributeError, dns.exception.DNSException) as e:
        return failed(f"MALFORMED {str(e)[:80]}")

    if soa is None:
        return failed("NO_SOA")
    return ResolverObservation(endpoint.name, soa, True, "",
                               (time.monotonic() - start) * 1000)


async def query_nameservers(client: httpx.AsyncClient, endpoint: ResolverEndpoint,
                            zone: str, timeout: float = 5.0) -> list[str]:
    """NS host names for the audit trail; any failure gives []."""
    try:
        resp = await _doh_request(client, endpoint, zone, "NS", timeout)
        if not resp.is_success:
            return []
        if endpoint.fmt == "wire":
            msg = dns.message.from_wire(resp.content)
            names = [rd.target.to_text(omit_final_dot=True)
                     for rrset in msg.answer if rrset.rdtype == dns.rdatatype.NS
                     for rd in rrset]
        else:
            names = [str(r.get("data", "")).rstrip(".")
                     for r in resp.json().get("Answer") or []
                     if r.get("type", dns.rdatatype.NS) == dns.rdatatype.NS]
    except (httpx.HTTPError, ValueError, AttributeError, dns.exception.DNSException):
        return []
    return [n for n in names if n and " " not in n]


async def gather_observations(client: httpx.AsyncClient,
                              resolvers: list[ResolverEndpoint], zone: str,
                              timeout: float = 5.0) -> list[ResolverObservation]:
    """Query every resolver at once; result order follows `resolvers`."""
    raw = await asyncio.gather(
        *(query_soa(client, r, zone, timeout) for r in resolvers),
        return_exceptions=True)
    out: list[ResolverObservation] = []
    for endpoint, r in zip(resolvers, raw):
        if isinstance(r, ResolverObservation):
            out.append(r)
        else:
            log.warning(f"Resolver task exception ({endpoint.name}): {r}")
            out.append(ResolverObservation(endpoint.name, None, False, f"FAIL {r}"))
    return out

# ---------------------------------------------------------------------------
# Consensus engine
# ---------------------------------------------------------------------------

def majority_threshold(total: int) -> int:
    return math.ceil(total / 2)


def compute_consensus(observations: list[ResolverObservation],
                      priority: list[str] | None = None,
                      nameservers: list[str] | None = None) -> ConsensusResult:
    """Majority vote over the successful observations.

    The serial seen most often wins; equal counts go to the serial reported
    by the resolver earliest in `priority` (default: observation order). It
    is accepted only with count >= ceil(successful / 2).
    """
    valid = [o for o in observations if o.ok and o.soa is not None]
    if priority:
        rank = {name: i for i, name in enumerate(priority)}
        valid.sort(key=lambda o: rank.get(o.resolver, len(rank)))
    ns = list(nameservers or [])
    if not valid:
        return ConsensusResult(None, 0, 0, nameservers=ns)

    samples = [o.soa.serial for o in valid]
    counts: dict[int, int] = {}
    first_seen: dict[int, int] = {}
    for i, s in enumerate(samples):
        counts[s] = counts.get(s, 0) + 1
        first_seen.setdefault(s, i)
    best = min(counts, key=lambda s: (-counts[s], first_seen[s]))
    votes = counts[best]

    if votes < majority_threshold(len(valid)):
        return ConsensusResult(None, votes, len(valid), samples=samples,
                               nameservers=ns)

    agreeing = [o for o in valid if o.soa.serial == best]
    return ConsensusResult(
        serial=best, votes=votes, total=len(valid),
        sources=[o.resolver for o in agreeing], samples=samples,
        soa=agreeing[0].soa, nameservers=ns, quorum=True)


def consensus_details(c: ConsensusResult) -> str:
    details = (f"Multi-resolver consensus: {c.votes}/{c.total} agree "
               f"({','.join(c.sources)}); samples: {','.join(map(str, c.samples))}")
    if c.nameservers:
        details += f"; NS: {','.join(c.nameservers[:NS_SHOWN])}"
    return details

# ---------------------------------------------------------------------------
# Change detection, confirmation, dedup
# ---------------------------------------------------------------------------

BASELINE = "baseline"
NO_CHANGE = "no_change"
CHANGE = "change"


def detect_change(last_known_serial: int | None, serial: int) -> str:
    if last_known_serial is None:
        return BASELINE
    if last_known_serial == serial:
        return NO_CHANGE
    return CHANGE


async def confirm_change(first: ConsensusResult,
                         resample: Callable[[], Awaitable[ConsensusResult]],
                         delay: float,
                         sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
                         ) -> tuple[bool, ConsensusResult]:
    """Wait `delay` seconds, vote again; confirmed only on the same quorum serial."""
    await sleep(delay)
    second = await resample()
    return second.quorum and second.serial == first.serial, second


def already_notified(recent: list[ZoneCheckRecord], serial: int) -> bool:
    """True when a change record that actually alerted carries `serial`."""
    return any(r.is_change and r.notified and r.serial == serial for r in recent)

# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

def clamp_cadence(value: Any) -> int:
    """Cadence in seconds, forced into [1, 60]; unset or zero means 60."""
    try:
        seconds = int(value or DEFAULT_CADENCE)
    except (TypeError, ValueError):
        seconds = DEFAULT_CADENCE
    return min(max(seconds, MIN_CADENCE), MAX_CADENCE)


def jitter_ms(rng: random.Random | None = None) -> int:
    """Uniform integer milliseconds in [0, JITTER_MS)."""
    return (rng or random).randrange(JITTER_MS)


def next_check_time(now: datetime, cadence_seconds: Any,
                    rng: random.Random | None = None) -> datetime:
    return now + timedelta(seconds=clamp_cadence(cadence_seconds),
                           milliseconds=jitter_ms(rng))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ---------------------------------------------------------------------------
# Per-zone round
# ---------------------------------------------------------------------------

class SOAMonitor:
    """Runs the check round for one zone at a time against a shared store."""

    def __init__(self, config: MonitorConfig, store: ZoneStore,
                 client: httpx.AsyncClient, *,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rng: random.Random | None = None,
                 dispatcher: Dispatcher | None = None) -> None:
        self.config = config
        self.store = store
        self.client = client
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.dispatcher = dispatcher or Dispatcher(
            client, config.app_url,
            email_url=config.email_function_url,
            email_token=config.email_function_token,
            policy=config.delivery_policy)
        self.priority = [r.name for r in config.resolvers]

    async def consensus(self, zone_name: str,
                        with_nameservers: bool = False) -> ConsensusResult:
        tasks = [gather_observations(self.client, self.config.resolvers,
                                     zone_name, self.config.timeout)]
        if with_nameservers and self.config.fetch_nameservers:
            tasks.append(query_nameservers(self.client, self.config.resolvers[0],
                                           zone_name, self.config.timeout))
        done = await asyncio.gather(*tasks)
        observations = done[0]
        nameservers = done[1] if len(done) > 1 else []
        for o in observations:
            if not o.ok:
                log.info(f"    !! {o.resolver} -> {zone_name}: {o.reason} "
                         f"({o.response_time_ms:.0f}ms)")
        return compute_consensus(observations, self.priority, nameservers)

    def _write(self, zone: Zone, operation: str, fn: Callable[[], Any]) -> Any:
        return self.config.store_policy.run(operation, zone.name, fn,
                                            errors=(sqlite3.Error,))

    def _record(self, zone: Zone, now: datetime, c: ConsensusResult,
                is_change: bool, details: str,
                previous_soa: str | None = None, notified: bool = False) -> None:
        record = ZoneCheckRecord(
            zone_id=zone.id, checked_at=now, serial=c.serial,
            soa_record=json.dumps(c.soa.to_dict()) if c.soa else "",
            is_change=is_change, change_details=details,
            previous_soa=previous_soa, notified=notified)
        self._write(zone, "check record", lambda: self.store.append_check(record))

    def _commit_serial(self, zone: Zone, serial: int) -> None:
        self._write(zone, "serial update",
                    lambda: self.store.update_serial(zone.id, serial))

    async def check_zone(self, zone: Zone, now: datetime) -> dict[str, Any]:
        """Full round for one zone. Per-zone problems come back as result fields."""
        try:
            return await self._check_zone(zone, now)
        except Exception as e:
            log.error(f"  {zone.name}: check failed: {e}")
            return {"zone": zone.name, "error": str(e) or type(e).__name__}

    async def _check_zone(self, zone: Zone, now: datetime) -> dict[str, Any]:
        # Provisional schedule first so a crash mid-check can't wedge the zone.
        next_at = next_check_time(now, zone.cadence_seconds, self.rng)
        self._write(zone, "schedule update",
                    lambda: self.store.update_schedule(zone.id, now, next_at))

        name = normalize_zone(zone.name)
        first = await self.consensus(name, with_nameservers=True)

        if not first.quorum:
            log.warning(f"  {zone.name}: insufficient consensus, "
                        f"samples: {','.join(map(str, first.samples)) or 'none'}")
            self._record(zone, now, first, False,
                         f"No quorum: {first.votes}/{first.total} best agreement; "
                         f"samples: {','.join(map(str, first.samples))}")
            return {"zone": zone.name, "error": NO_QUORUM_ERROR,
                    "outcome": "no_quorum", "votes": first.votes,
                    "total": first.total, "samples": first.samples}

        kind = detect_change(zone.last_known_serial, first.serial)
        details = consensus_details(first)
        result: dict[str, Any] = {
            "zone": zone.name,
            "serial": first.serial,
            "isChange": kind != NO_CHANGE,
            "votes": first.votes,
            "total": first.total,
            "nameservers": first.nameservers[:NS_SHOWN],
            "sources": first.sources,
        }

        if kind == NO_CHANGE:
            self._record(zone, now, first, False, details)
            self._commit_serial(zone, first.serial)
            result["outcome"] = NO_CHANGE
            return result

        previous_soa = self.store.latest_soa(zone.id)
        log.info(f"  {zone.name}: serial {zone.last_known_serial} -> {first.serial} "
                 f"({first.votes}/{first.total}), confirming")
        confirmed, second = await confirm_change(
            first, lambda: self.consensus(name), self.config.confirm_delay, self.sleep)

        if not confirmed:
            # Commit the newest serial anyway; a zone in flux would otherwise
            # retrigger confirmation on every tick.
            latest = second if second.quorum else first
            log.warning(f"  {zone.name}: change not confirmed: first={first.serial}, "
                        f"second={second.serial if second.quorum else 'null'}")
            self._record(zone, now, latest, True,
                         f"{details}; change not confirmed on second check "
                         f"(first={first.serial}, "
                         f"second={second.serial if second.quorum else 'none'})",
                         previous_soa=previous_soa)
            self._commit_serial(zone, latest.serial)
            result.update(serial=latest.serial, outcome="unconfirmed",
                          note="Change not confirmed on second check",
                          first={"serial": first.serial, "votes": first.votes},
                          second=second.to_dict())
            return result

        recent = self.store.recent_changes(
            zone.id, now - self.config.dedup_window, DEDUP_LOOKBACK,
            notified_only=True)
        duplicate = already_notified(recent, first.serial)
        if duplicate:
            details += "; duplicate notification suppressed"
        notify = not duplicate and (kind == CHANGE or self.config.notify_on_baseline)

        # Serial goes in before notifications go out. A failed commit is
        # reported but must not hold back the alert.
        self._soft_write(result, lambda: self._commit_serial(zone, first.serial))

        if duplicate:
            log.info(f"  {zone.name}: serial {first.serial} already notified, suppressed")
            result.update(outcome="duplicate",
                          note="Change detected but already notified for this "
                               "serial (deduplication)")
        elif not notify:
            result.update(outcome=BASELINE,
                          note="Baseline serial recorded; baseline notifications disabled")
        else:
            event = ChangeEvent(zone.id, zone.name, zone.last_known_serial,
                                first.serial, first.soa.to_dict(), now)
            prefs = self.store.get_preferences(zone.user_id)
            deliveries = await self.dispatcher.dispatch(event, prefs)
            result.update(outcome=BASELINE if kind == BASELINE else "confirmed",
                          notifications=[d.to_dict() for d in deliveries])

        # Only written once dispatch has run, so notified=True means an alert went out.
        self._soft_write(result, lambda: self._record(
            zone, now, first, True, details, previous_soa=previous_soa,
            notified=notify))
        return result

    def _soft_write(self, result: dict[str, Any], write: Callable[[], Any]) -> None:
        """Run a store write whose failure belongs on the result, not the round."""
        try:
            write()
        except PersistenceError as e:
            log.error(f"  {e.zone}: {e}")
            result["error"] = "; ".join(filter(None, [result.get("error"), str(e)]))

# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------

async def run_tick(config: MonitorConfig, *,
                   store: ZoneStore | None = None,
                   clock: Callable[[], datetime] = utcnow,
                   sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                   rng: random.Random | None = None,
                   transport: httpx.AsyncBaseTransport | None = None
                   ) -> dict[str, Any]:
    """Check every due zone once and return the summary for the caller.

    Raises ConfigError before touching any zone when the configuration is
    unusable; everything that goes wrong for a single zone ends up in that
    zone's result entry instead.
    """
    config.validate()
    store = store or ZoneStore(config.db_file)
    store.init()

    now = clock()
    zones = store.due_zones(now)
    if not zones:
        return {"message": "DNS monitoring completed", "results": [],
                "zonesChecked": 0,
                "note": "No zones due for checking at this time"}

    log.info(f"--- tick {now.isoformat()}: {len(zones)} zone(s) due ---")
    tick_start = time.monotonic()
    limit = asyncio.Semaphore(max(1, config.zone_concurrency))

    async with httpx.AsyncClient(http2=True, transport=transport,
                                 timeout=config.timeout) as client:
        monitor = SOAMonitor(config, store, client, sleep=sleep, rng=rng)

        async def one(zone: Zone) -> dict[str, Any]:
            async with limit:
                return await monitor.check_zone(zone, now)

        results = list(await asyncio.gather(*(one(z) for z in zones)))

    changes = sum(1 for r in results if r.get("isChange"))
    errors = sum(1 for r in results if "error" in r)
    log.info(f"  Tick took {(time.monotonic() - tick_start) * 1000:.0f}ms: "
             f"{len(zones)} checked, {changes} change(s), {errors} error(s)")
    return {"message": "DNS monitoring completed", "results": results,
            "zonesChecked": len(zones)}


async def run_forever(config: MonitorConfig, interval: float) -> None:
    """Timer trigger: a tick every `interval` seconds until SIGINT/SIGTERM."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    log.info("=" * 60)
    log.info(f"SOA Monitor started | Interval: {interval}s | DB: {config.db_file}")
    log.info(f"Resolvers: {', '.join(f'{r.name} ({r.url})' for r in config.resolvers)}")
    log.info("=" * 60)

    ticks = 0
    while not shutdown.is_set():
        tick_start = time.monotonic()
        ticks += 1
        try:
            await run_tick(config)
        except ConfigError:
            raise
        except Exception as e:
            log.error(f"Tick #{ticks} failed: {e}")
        remaining = interval - (time.monotonic() - tick_start)
        if remaining > 0 and not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
    log.info(f"SOA Monitor stopped after {ticks} tick(s)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Quorum-verified SOA change monitor")
    parser.add_argument("--loop", type=float, metavar="SECONDS",
                        help="keep running, one tick every SECONDS (default: INTERVAL)")
    parser.add_argument("--db", help="zone store path (overrides SOA_DB_FILE)")
    args = parser.parse_args()

    setup_logging()
    env = dict(os.environ)
    if args.db:
        env["SOA_DB_FILE"] = args.db
    try:
        config = load_config(env)
        interval = args.loop or config.interval
        if interval:
            asyncio.run(run_forever(config, interval))
        else:
            summary = asyncio.run(run_tick(config))
            print(json.dumps(summary, indent=2))
    except ConfigError as e:
        log.error(f"DNS monitoring failed: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
