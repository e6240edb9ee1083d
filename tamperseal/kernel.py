"""
TamperSeal Kernel — tamper-evident single-record store

Components:
- ClientRegistry: per-client token/secret issuance and lookup
- IntegrityCodec: SHA-512 checksum + HMAC-SHA-512 tag over payload and checksum
- VersionedStore: current record + append-only, timestamped history
- SessionProtocol: register / read / write / recover / history orchestration
- Telemetry, RateLimiter: service-side counters and request throttling
"""

from __future__ import annotations

import datetime
import hashlib
import hmac
import secrets
import threading
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

SCHEMA_VERSION = "ts-v1"
DIGEST_ALGORITHM = "sha512"
SECRET_BYTES = 32
TAG_SEPARATOR = "-"

DEFAULT_SEED_PAYLOAD = "Hello World"
DEFAULT_RATE_LIMIT_MAX = 100
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 15 * 60

# =============================================================================
# TIME UTILITIES
# =============================================================================

def now_utc() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def iso_z(dt: datetime.datetime) -> str:
    return dt.astimezone(datetime.timezone.utc).isoformat().replace("+00:00", "Z")

def now_z() -> str:
    return iso_z(now_utc())

# =============================================================================
# EXCEPTIONS
# =============================================================================

class TamperSealError(Exception): pass
class UnauthorizedError(TamperSealError): pass
class IntegrityFailedError(TamperSealError): pass
class NotFoundError(TamperSealError): pass
class MalformedRequestError(TamperSealError): pass
class RateLimitedError(TamperSealError): pass

# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class ClientIdentity:
    token: str
    secret: str

@dataclass(frozen=True)
class Record:
    payload: str
    checksum: str
    tag: str

@dataclass(frozen=True)
class HistoryEntry:
    record: Record
    timestamp: str

@dataclass(frozen=True)
class Verdict:
    """A record as returned to a caller, with the tag check for that caller's secret."""

    payload: str
    checksum: str
    tag: str
    verified: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass(frozen=True)
class RequestContext:
    token: str
    secret: str

# =============================================================================
# CLIENT REGISTRY
# =============================================================================

class ClientRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._secrets: Dict[str, str] = {}

    def register(self) -> ClientIdentity:
        token = str(uuid.uuid4())
        secret = secrets.token_hex(SECRET_BYTES)
        with self._lock:
            self._secrets[token] = secret
        return ClientIdentity(token=token, secret=secret)

    def authenticate(self, token: Optional[str]) -> str:
        if not token or not isinstance(token, str):
            raise UnauthorizedError("missing client token")
        try:
            uuid.UUID(token)
        except ValueError:
            raise UnauthorizedError("malformed client token") from None
        secret = self._secrets.get(token)
        if secret is None:
            raise UnauthorizedError("unknown client token")
        return secret

    def __contains__(self, token: object) -> bool:
        return token in self._secrets

    def __len__(self) -> int:
        return len(self._secrets)

# =============================================================================
# INTEGRITY CODEC
# =============================================================================

class IntegrityCodec:
    """Checksum and keyed tag over ``payload-checksum``.

    The tag covers the checksum, so altering either the payload or the
    checksum after tagging makes :meth:`verify` fail.
    """

    @staticmethod
    def checksum(payload: str) -> str:
        return hashlib.sha512(payload.encode("utf-8")).hexdigest()

    @staticmethod
    def tag(payload: str, checksum: str, secret: str) -> str:
        message = f"{payload}{TAG_SEPARATOR}{checksum}"
        return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).hexdigest()

    @classmethod
    def verify(cls, payload: str, checksum: str, tag: str, secret: str) -> bool:
        if not isinstance(tag, str):
            return False
        expected = cls.tag(payload, checksum, secret)
        return hmac.compare_digest(expected.encode("utf-8"), tag.encode("utf-8"))

    @classmethod
    def seal(cls, payload: str, secret: str) -> Record:
        checksum = cls.checksum(payload)
        return Record(payload=payload, checksum=checksum, tag=cls.tag(payload, checksum, secret))

# =============================================================================
# VERSIONED STORE
# =============================================================================

class VersionedStore:
    """Single shared record with a history of pre-write snapshots.

    Every accepted write pushes the outgoing ``current`` onto the history
    before replacing it; rejected writes touch neither.
    """

    def __init__(self, seed_payload: str = DEFAULT_SEED_PAYLOAD, codec: Optional[IntegrityCodec] = None):
        self._codec = codec or IntegrityCodec()
        self._lock = threading.Lock()
        self._current = Record(payload=seed_payload, checksum=self._codec.checksum(seed_payload), tag="")
        self._history: List[HistoryEntry] = [HistoryEntry(self._current, now_z())]

    def read(self) -> Record:
        with self._lock:
            return self._current

    def write(self, payload: str, checksum: str, tag: str, secret: str) -> Record:
        try:
            accepted = self._codec.verify(payload, checksum, tag, secret)
        except UnicodeEncodeError:
            raise MalformedRequestError("payload, checksum and tag must be valid UTF-8 text") from None
        if not accepted:
            raise IntegrityFailedError("Data integrity check failed.")
        record = Record(payload=payload, checksum=checksum, tag=tag)
        with self._lock:
            self._history.append(HistoryEntry(self._current, now_z()))
            self._current = record
        return record

    def recover(self) -> Record:
        with self._lock:
            if not self._history:
                raise NotFoundError("No previous data available to recover.")
            return self._history[-1].record

    def history(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._history)

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)

# =============================================================================
# TELEMETRY (Prometheus-ish)
# =============================================================================

class Telemetry:
    """Labelled counters and gauges for the service, exported as JSON or Prometheus text."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}

    @staticmethod
    def series(name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def inc(self, name: str, labels: Optional[Dict[str, str]] = None, value: int = 1) -> None:
        with self._lock:
            self._counters[self.series(name, labels)] += value

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._gauges[self.series(name, labels)] = value

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        key = self.series(name, labels)
        with self._lock:
            if key in self._gauges:
                return self._gauges[key]
            return self._counters.get(key, 0)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        with self._lock:
            for kind, samples in (("counter", self._counters), ("gauge", self._gauges)):
                typed = set()
                for key in sorted(samples):
                    family = key.split("{")[0]
                    if family not in typed:
                        typed.add(family)
                        lines.append(f"# TYPE {family} {kind}")
                    lines.append(f"{key} {samples[key]}")
        return "\n".join(lines)

    def export_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {"counters": dict(self._counters), "gauges": dict(self._gauges)}

# =============================================================================
# RATE LIMITER
# =============================================================================

class RateLimiter:
    """Fixed-window request counter keyed by caller address. ``max_requests=0`` disables it."""

    def __init__(self, max_requests: int = DEFAULT_RATE_LIMIT_MAX,
                 window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = defaultdict(int)
        self._window: Optional[int] = None

    def _current_window(self) -> int:
        return int(now_utc().timestamp()) // max(1, self.window_seconds)

    def check(self, key: str) -> None:
        if self.max_requests <= 0:
            return
        window = self._current_window()
        with self._lock:
            if self._window != window:
                self._window = window
                self._counts.clear()
            self._counts[key] += 1
            count = self._counts[key]
        if count > self.max_requests:
            raise RateLimitedError("Too many requests, please try again later.")

# =============================================================================
# SESSION PROTOCOL
# =============================================================================

@dataclass
class SessionProtocol:
    registry: ClientRegistry = field(default_factory=ClientRegistry)
    store: VersionedStore = field(default_factory=VersionedStore)
    codec: IntegrityCodec = field(default_factory=IntegrityCodec)
    telemetry: Telemetry = field(default_factory=Telemetry)

    def __post_init__(self):
        self.telemetry.set_gauge("history_depth", len(self.store))

    def resolve(self, token: Optional[str]) -> RequestContext:
        try:
            secret = self.registry.authenticate(token)
        except UnauthorizedError:
            self.telemetry.inc("unauthorized_total")
            raise
        return RequestContext(token=token, secret=secret)

    def _verdict(self, record: Record, ctx: RequestContext) -> Verdict:
        verified = self.codec.verify(record.payload, record.checksum, record.tag, ctx.secret)
        return Verdict(record.payload, record.checksum, record.tag, verified)

    def handle_register(self) -> ClientIdentity:
        ident = self.registry.register()
        self.telemetry.inc("clients_registered_total")
        logger.info("client_registered", token=ident.token)
        return ident

    # Token-level entry points authenticate first, then run the context-level
    # operation below with the resolved identity.

    def handle_read(self, token: Optional[str]) -> Verdict:
        return self.read(self.resolve(token))

    def handle_write(self, token: Optional[str], payload: str, checksum: str, tag: str) -> None:
        self.write(self.resolve(token), payload, checksum, tag)

    def handle_recover(self, token: Optional[str]) -> Verdict:
        return self.recover(self.resolve(token))

    def handle_history(self, token: Optional[str]) -> List[Dict[str, Any]]:
        return self.history(self.resolve(token))

    def read(self, ctx: RequestContext) -> Verdict:
        verdict = self._verdict(self.store.read(), ctx)
        self.telemetry.inc("reads_total", {"verified": str(verdict.verified).lower()})
        return verdict

    def write(self, ctx: RequestContext, payload: str, checksum: str, tag: str) -> None:
        try:
            self.store.write(payload, checksum, tag, ctx.secret)
        except IntegrityFailedError:
            self.telemetry.inc("writes_total", {"outcome": "rejected"})
            logger.warning("write_rejected", token=ctx.token)
            raise
        depth = len(self.store)
        self.telemetry.inc("writes_total", {"outcome": "accepted"})
        self.telemetry.set_gauge("history_depth", depth)
        logger.info("record_written", token=ctx.token, history_depth=depth)

    def recover(self, ctx: RequestContext) -> Verdict:
        verdict = self._verdict(self.store.recover(), ctx)
        self.telemetry.inc("recovers_total", {"verified": str(verdict.verified).lower()})
        logger.info("record_recovered", token=ctx.token, verified=verdict.verified)
        return verdict

    def history(self, ctx: RequestContext) -> List[Dict[str, Any]]:
        out = []
        for entry in self.store.history():
            row = self._verdict(entry.record, ctx).to_dict()
            row["timestamp"] = entry.timestamp
            out.append(row)
        return out

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "schema": SCHEMA_VERSION,
            "digest": DIGEST_ALGORITHM,
            "clients": len(self.registry),
            "history_depth": len(self.store),
        }
