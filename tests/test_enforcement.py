"""
Layer-2 Enforcement Tests

HttpEnforcementBackend against a local aiohttp test server. Every failure
mode must fail closed.
"""

import pytest
from aiohttp import web
from aiohttp import test_utils

from workflow_gate.enforcement import (
    ENFORCEMENT_DENIED,
    ENFORCEMENT_MALFORMED,
    ENFORCEMENT_UNAVAILABLE,
    AllowAllEnforcement,
    HttpEnforcementBackend,
)
from workflow_gate.intent_normalizer import normalize_intent
from workflow_gate.models import PolicyBlocker, PolicyDecision

from tests.conftest import native_transfer


@pytest.fixture
def intent():
    return normalize_intent("sepolia", native_transfer())


async def _serve(handler):
    app = web.Application()
    app.router.add_post("/authorize", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


class TestAllowAll:

    @pytest.mark.asyncio
    async def test_mirrors_policy_decision(self, intent):
        """The development backend never overrides the policy engine."""
        backend = AllowAllEnforcement()
        assert (await backend.authorize("run-1", "sepolia", intent, PolicyDecision())).allowed
        blocked = PolicyDecision(blockers=[PolicyBlocker("x", "y", "z")])
        assert not (await backend.authorize("run-1", "sepolia", intent, blocked)).allowed


class TestHttpEnforcement:

    @pytest.mark.asyncio
    async def test_allowed(self, intent):
        """An allowed response passes the authorization through."""
        seen = {}

        async def handler(request):
            seen["body"] = await request.json()
            seen["auth"] = request.headers.get("Authorization")
            return web.json_response({"allowed": True, "authorization": {"signature": "sig"}})

        server = await _serve(handler)
        try:
            backend = HttpEnforcementBackend(str(server.make_url("")), token="secret")
            verdict = await backend.authorize("run-1", "sepolia", intent, PolicyDecision())
        finally:
            await server.close()
        assert verdict.allowed
        assert verdict.authorization == {"signature": "sig"}
        assert seen["body"]["intentHash"] == intent.intent_hash()
        assert seen["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_denied(self, intent):
        """A denial becomes a policy blocker with the service's reason."""

        async def handler(request):
            return web.json_response({"allowed": False, "reason": "signer refused"})

        server = await _serve(handler)
        try:
            verdict = await HttpEnforcementBackend(str(server.make_url(""))).authorize(
                "run-1", "sepolia", intent, PolicyDecision()
            )
        finally:
            await server.close()
        assert not verdict.allowed
        assert verdict.blockers[0].code == ENFORCEMENT_DENIED
        assert verdict.blockers[0].reason == "signer refused"

    @pytest.mark.asyncio
    async def test_malformed(self, intent):
        """A response without a boolean 'allowed' is an integrity blocker."""

        async def handler(request):
            return web.json_response({"allowed": "yes"})

        server = await _serve(handler)
        try:
            verdict = await HttpEnforcementBackend(str(server.make_url(""))).authorize(
                "run-1", "sepolia", intent, PolicyDecision()
            )
        finally:
            await server.close()
        assert not verdict.allowed
        assert verdict.blockers[0].code == ENFORCEMENT_MALFORMED
        assert verdict.blockers[0].category == "integrity"

    @pytest.mark.asyncio
    async def test_http_error(self, intent):
        """Non-200 responses fail closed as unavailable."""

        async def handler(request):
            return web.Response(status=503)

        server = await _serve(handler)
        try:
            verdict = await HttpEnforcementBackend(str(server.make_url(""))).authorize(
                "run-1", "sepolia", intent, PolicyDecision()
            )
        finally:
            await server.close()
        assert not verdict.allowed
        assert verdict.blockers[0].code == ENFORCEMENT_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_unreachable(self, intent):
        """A connection failure fails closed."""
        backend = HttpEnforcementBackend("http://127.0.0.1:1", timeout=1.0)
        verdict = await backend.authorize("run-1", "sepolia", intent, PolicyDecision())
        assert not verdict.allowed
        assert verdict.blockers[0].code == ENFORCEMENT_UNAVAILABLE
        assert verdict.blockers[0].category == "adapter"
