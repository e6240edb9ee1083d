"""TamperSeal: a tamper-evident single-record store with HMAC-verified reads, writes and recovery."""

from tamperseal.kernel import (
    SCHEMA_VERSION,
    ClientIdentity,
    ClientRegistry,
    HistoryEntry,
    IntegrityCodec,
    IntegrityFailedError,
    MalformedRequestError,
    NotFoundError,
    RateLimitedError,
    RateLimiter,
    Record,
    RequestContext,
    SessionProtocol,
    TamperSealError,
    Telemetry,
    UnauthorizedError,
    Verdict,
    VersionedStore,
)

__all__ = [
    "SCHEMA_VERSION",
    "ClientIdentity",
    "ClientRegistry",
    "HistoryEntry",
    "IntegrityCodec",
    "IntegrityFailedError",
    "MalformedRequestError",
    "NotFoundError",
    "RateLimitedError",
    "RateLimiter",
    "Record",
    "RequestContext",
    "SessionProtocol",
    "TamperSealError",
    "Telemetry",
    "UnauthorizedError",
    "Verdict",
    "VersionedStore",
]
