"""
TamperSeal HTTP client.

Computes checksums and tags on the caller's side, the same way the server
verifies them, so the secret never has to be sent back after registration.

Usage:
    with TamperSealClient("http://localhost:8080") as c:
        c.register()
        c.write("Hello World")
        print(c.read())
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import structlog

from tamperseal.kernel import (
    ClientIdentity,
    IntegrityCodec,
    IntegrityFailedError,
    MalformedRequestError,
    NotFoundError,
    RateLimitedError,
    TamperSealError,
    UnauthorizedError,
    Verdict,
)

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "http://localhost:8080"
TOKEN_HEADER = "X-Client-Token"

_ERRORS = {
    "unauthorized": UnauthorizedError,
    "integrity_failed": IntegrityFailedError,
    "not_found": NotFoundError,
    "malformed_request": MalformedRequestError,
    "rate_limited": RateLimitedError,
}


class TamperSealClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, http: Optional[httpx.Client] = None,
                 timeout: float = 10.0):
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self._owns_http = http is None
        self.identity: Optional[ClientIdentity] = None

    def __enter__(self) -> "TamperSealClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    # ── Transport ────────────────────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        if self.identity is None:
            return {}
        return {TOKEN_HEADER: self.identity.token}

    def _check(self, resp: httpx.Response) -> Any:
        if resp.is_success:
            return resp.json()
        try:
            body = resp.json()
        except ValueError:
            body = {}
        code = body.get("error", "") if isinstance(body, dict) else ""
        detail = body.get("detail", resp.text) if isinstance(body, dict) else resp.text
        exc_type = _ERRORS.get(code, TamperSealError)
        raise exc_type(detail or f"HTTP {resp.status_code}")

    @staticmethod
    def _verdict(body: Dict[str, Any]) -> Verdict:
        return Verdict(body["payload"], body["checksum"], body["tag"], bool(body["verified"]))

    # ── Operations ───────────────────────────────────────────────────

    def register(self) -> ClientIdentity:
        body = self._check(self._http.post("/init"))
        self.identity = ClientIdentity(token=body["token"], secret=body["secret"])
        logger.debug("client_registered", token=self.identity.token)
        return self.identity

    def read(self) -> Verdict:
        return self._verdict(self._check(self._http.get("/", headers=self._headers())))

    def write(self, payload: str) -> None:
        if self.identity is None:
            raise UnauthorizedError("register() before writing")
        rec = IntegrityCodec.seal(payload, self.identity.secret)
        self.write_raw(rec.payload, rec.checksum, rec.tag)

    def write_raw(self, payload: str, checksum: str, tag: str) -> None:
        body = {"payload": payload, "checksum": checksum, "tag": tag}
        self._check(self._http.post("/", json=body, headers=self._headers()))

    def recover(self) -> Verdict:
        return self._verdict(self._check(self._http.get("/recover", headers=self._headers())))

    def history(self) -> List[Dict[str, Any]]:
        return self._check(self._http.get("/history", headers=self._headers()))

    def verify_locally(self, verdict: Verdict) -> bool:
        """Repeat the tag check with this client's own secret."""
        if self.identity is None:
            return False
        return IntegrityCodec.verify(verdict.payload, verdict.checksum, verdict.tag, self.identity.secret)
