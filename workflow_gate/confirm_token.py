"""
Confirm-Token Authority.

A confirm token binds ``{run_id, network, intent}`` with a time limit so an
execute call can be checked against the exact request that was analysed.

LAYER-1 ONLY:
The token is an unsigned, opaque encoding. It detects staleness and
tampering (a changed intent, network or run id); it does NOT prove the caller
is entitled to execute. Anyone can mint a structurally valid token. The
unforgeable control is the external Layer-2 enforcement backend
(see ``enforcement.py``), which holds the real signing authority.
"""

import base64
import binascii
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .models import Intent, utcnow

TOKEN_PREFIX = "WGT1."
TOKEN_TAG = "workflow-confirm"
TOKEN_VERSION = 1
DEFAULT_TTL_SECONDS = 20 * 60
# tolerated forward clock skew for issued_at
MAX_CLOCK_SKEW_SECONDS = 60

REASON_OK = "ok"
REASON_UNDECODABLE = "undecodable"
REASON_NETWORK_MISMATCH = "network-mismatch"
REASON_EXPIRED = "expired"
REASON_TAMPER = "tamper-detected"
REASON_MISSING = "missing"


@dataclass(frozen=True)
class ConfirmTokenClaims:
    run_id: str
    network: str
    intent_hash: str
    issued_at: datetime
    nonce: str


@dataclass(frozen=True)
class TokenVerification:
    ok: bool
    reason: str
    detail: str = ""
    claims: Optional[ConfirmTokenClaims] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "reason": self.reason, "detail": self.detail}


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class ConfirmTokenAuthority:
    """Issues and verifies Layer-1 confirm tokens."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def issue(self, run_id: str, network: str, intent: Intent) -> str:
        payload = {
            "tag": TOKEN_TAG,
            "v": TOKEN_VERSION,
            "runId": run_id,
            "network": network,
            "intentHash": intent.intent_hash(),
            "issuedAt": self.clock().timestamp(),
            "nonce": secrets.token_hex(8),
        }
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return TOKEN_PREFIX + _b64encode(raw)

    def decode(self, token: str) -> Optional[ConfirmTokenClaims]:
        """Return the claims, or None when the token is not a well-formed v1 token."""
        text = (token or "").strip()
        if not text.startswith(TOKEN_PREFIX):
            return None
        try:
            payload = json.loads(_b64decode(text[len(TOKEN_PREFIX):]).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("tag") != TOKEN_TAG or payload.get("v") != TOKEN_VERSION:
            return None
        try:
            issued_at = datetime.fromtimestamp(float(payload["issuedAt"]), tz=self.clock().tzinfo)
            return ConfirmTokenClaims(
                run_id=str(payload["runId"]),
                network=str(payload["network"]),
                intent_hash=str(payload["intentHash"]),
                issued_at=issued_at,
                nonce=str(payload["nonce"]),
            )
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return None

    def verify(
        self,
        token: Optional[str],
        run_id: str,
        network: str,
        intent: Intent,
    ) -> TokenVerification:
        """
        Check a token against the live request.

        Order: decodability -> network -> age -> run id / intent hash.
        Each failure carries a specific reason so the caller can self-correct.
        """
        if not token or not str(token).strip():
            return TokenVerification(False, REASON_MISSING, "no confirm token supplied")

        claims = self.decode(token)
        if claims is None:
            return TokenVerification(False, REASON_UNDECODABLE, "token is not a valid confirm token")

        if claims.network != network:
            return TokenVerification(
                False,
                REASON_NETWORK_MISMATCH,
                f"token issued for network {claims.network}, request targets {network}",
                claims,
            )

        now = self.clock()
        age = now - claims.issued_at
        if age > timedelta(seconds=self.ttl_seconds):
            return TokenVerification(
                False,
                REASON_EXPIRED,
                f"token age {int(age.total_seconds())}s exceeds ttl {self.ttl_seconds}s",
                claims,
            )
        if age < -timedelta(seconds=MAX_CLOCK_SKEW_SECONDS):
            return TokenVerification(False, REASON_TAMPER, "token issued in the future", claims)

        if claims.run_id != run_id:
            return TokenVerification(
                False,
                REASON_TAMPER,
                f"token bound to run {claims.run_id}, request is run {run_id}",
                claims,
            )
        if claims.intent_hash != intent.intent_hash():
            return TokenVerification(
                False,
                REASON_TAMPER,
                "intent changed since the token was issued",
                claims,
            )
        return TokenVerification(True, REASON_OK, "", claims)
