"""Layer-2 enforcement hook.

The confirm token is Layer-1 and can be bypassed by a bug in this process.
Layer-2 is an out-of-process service (policy service, enclave, signer) that
holds the real signing authority and gets the final say before broadcast.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from .models import Intent, PolicyBlocker, PolicyDecision

logger = logging.getLogger(__name__)

ENFORCEMENT_UNAVAILABLE = "enforcement-unavailable"
ENFORCEMENT_DENIED = "enforcement-denied"
ENFORCEMENT_MALFORMED = "enforcement-malformed-response"


@dataclass
class EnforcementVerdict:
    allowed: bool
    blockers: List[PolicyBlocker] = field(default_factory=list)
    authorization: Dict[str, Any] = field(default_factory=dict)
    backend: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "backend": self.backend,
            "authorization": dict(self.authorization),
            "blockers": [b.to_dict() for b in self.blockers],
        }


class EnforcementBackend(ABC):
    """Abstract Layer-2 authority consulted after the in-process policy pass."""

    name = "abstract"

    @abstractmethod
    async def authorize(
        self, run_id: str, network: str, intent: Intent, decision: PolicyDecision
    ) -> EnforcementVerdict:
        pass


class AllowAllEnforcement(EnforcementBackend):
    """Development-only backend that approves everything the policy engine allowed."""

    name = "allow-all"

    async def authorize(
        self, run_id: str, network: str, intent: Intent, decision: PolicyDecision
    ) -> EnforcementVerdict:
        return EnforcementVerdict(allowed=decision.allowed, backend=self.name)


class HttpEnforcementBackend(EnforcementBackend):
    """HTTP Layer-2 backend. Fails CLOSED on any error.

    Example:
        backend = HttpEnforcementBackend("http://policy-service:8080")
        verdict = await backend.authorize(run_id, "ethereum", intent, decision)
    """

    name = "http"

    def __init__(self, base_url: str, timeout: float = 5.0, token: Optional[str] = None):
        """Initialize HTTP backend.

        Args:
            base_url: Base URL of the enforcement service
            timeout: Request timeout in seconds
            token: Optional bearer token sent with each request
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token = token

    async def authorize(
        self, run_id: str, network: str, intent: Intent, decision: PolicyDecision
    ) -> EnforcementVerdict:
        payload = {
            "runId": run_id,
            "network": network,
            "intent": intent.to_dict(),
            "intentHash": intent.intent_hash(),
            "decision": decision.to_dict(),
        }
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        url = f"{self.base_url}/authorize"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(url, json=payload, headers=headers) as resp:
                    if resp.status != 200:
                        return self._unavailable(run_id, f"enforcement service returned HTTP {resp.status}")
                    body = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            return self._unavailable(run_id, f"enforcement service unreachable: {exc}")

        if not isinstance(body, dict) or not isinstance(body.get("allowed"), bool):
            logger.warning("enforcement malformed response run_id=%s", run_id)
            return EnforcementVerdict(
                allowed=False,
                backend=self.name,
                blockers=[
                    PolicyBlocker(
                        code=ENFORCEMENT_MALFORMED,
                        reason="enforcement service response lacks a boolean 'allowed'",
                        remediation="Check the enforcement service version and contract.",
                        category="integrity",
                    )
                ],
            )
        if not body["allowed"]:
            reason = str(body.get("reason") or "denied by enforcement service")
            logger.warning("enforcement denied run_id=%s reason=%s", run_id, reason)
            return EnforcementVerdict(
                allowed=False,
                backend=self.name,
                blockers=[
                    PolicyBlocker(
                        code=ENFORCEMENT_DENIED,
                        reason=reason,
                        remediation=str(body.get("remediation") or "Review the enforcement service policy for this run."),
                        category="policy",
                    )
                ],
            )
        return EnforcementVerdict(
            allowed=True,
            backend=self.name,
            authorization=dict(body.get("authorization") or {}),
        )

    def _unavailable(self, run_id: str, reason: str) -> EnforcementVerdict:
        logger.warning("enforcement unavailable run_id=%s: %s", run_id, reason)
        return EnforcementVerdict(
            allowed=False,
            backend=self.name,
            blockers=[
                PolicyBlocker(
                    code=ENFORCEMENT_UNAVAILABLE,
                    reason=reason,
                    remediation="Retry once the enforcement service at ENFORCEMENT_URL is reachable, with a new runId.",
                    category="adapter",
                )
            ],
        )
