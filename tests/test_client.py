"""
Tests for CapabilityClient (src/client.py).

The client runs over a real DuplexSession whose other end is ScriptedPeer: a
minimal MCP server that answers initialize, tools/list and tools/call, and
checks bearer tokens the way a resource server would.
"""

import logging

import pytest

from src.auth import validate_token
from src.client import CapabilityClient, ToolDescriptor, client_capabilities, default_scope_classifier
from src.config import settings
from src.context import CallerContext
from src.errors import ApplicationError, ProtocolError, RequirementsNotMet
from src.evaluator import unmet_scopes
from src.messages import WireTool, make_error, make_result
from src.requirements import Capability, ClaimPermission, InputPermission, NestedTooDeep, ScopePermission
from src.tools import TOOL_REQUIREMENTS

LISTED_TOOLS = [
    {
        "name": "summarize",
        "description": "Summarize any text using an LLM",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
        "requires": TOOL_REQUIREMENTS["summarize"],
    },
    # FastMCP peers carry custom metadata under _meta.
    {"name": "deleteUser", "_meta": {"requires": TOOL_REQUIREMENTS["deleteUser"]}},
    {"name": "imageGenerator", "requires": TOOL_REQUIREMENTS["imageGenerator"]},
    {"name": "transferFunds", "requires": TOOL_REQUIREMENTS["transferFunds"]},
    {"name": "legacyFileManager", "description": "Declares nothing"},
    {"name": "basicCalculator", "requires": []},
]

# What the peer itself enforces at call time.
PEER_SCOPES = {
    "deleteUser": ["admin:users:delete"],
    "legacyFileManager": ["filesystem:access"],
}


class ScriptedPeer:
    """Answers MCP requests from a FakePeer; records what it was sent."""

    def __init__(self, tools=LISTED_TOOLS, page_size: int | None = None):
        self.tools = tools
        self.page_size = page_size
        self.initialize_params: dict | None = None
        self.list_cursors: list = []
        self.calls: list[dict] = []
        self.notifications: list[str] = []

    def __call__(self, message: dict):
        if "id" not in message:
            self.notifications.append(message["method"])
            return None
        params = message.get("params") or {}
        if message["method"] == "initialize":
            self.initialize_params = params
            return make_result(
                message["id"],
                {
                    "protocolVersion": params["protocolVersion"],
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "scripted-peer", "version": "0.1.0"},
                },
            )
        if message["method"] == "tools/list":
            return make_result(message["id"], self._list(params.get("cursor")))
        if message["method"] == "tools/call":
            self.calls.append(params)
            if params["name"] == "transferFunds":
                return make_error(
                    message["id"], -32000, "missing required scopes: accounts:read, accounts:write"
                )
            return make_result(message["id"], self._call(params))
        return make_error(message["id"], -32601, "Method not found")

    def _list(self, cursor):
        self.list_cursors.append(cursor)
        if self.page_size is None:
            return {"tools": self.tools}
        start = int(cursor or 0)
        end = start + self.page_size
        page = {"tools": self.tools[start:end]}
        if end < len(self.tools):
            page["nextCursor"] = str(end)
        return page

    def _call(self, params):
        header = (params.get("_meta") or {}).get("authorization")
        scopes = validate_token(header).scopes if header else []
        missing = [s for s in PEER_SCOPES.get(params["name"], []) if s not in scopes]
        if missing:
            text = f"Access denied: Missing required scope '{missing[0]}'"
            return {"content": [{"type": "text", "text": text}], "isError": True}
        return {
            "content": [{"type": "text", "text": f"{params['name']} ok"}],
            "structuredContent": {"arguments": params["arguments"]},
        }


@pytest.fixture
def scripted_peer(fake_peer):
    peer = ScriptedPeer()
    fake_peer.serve(peer)
    return peer


@pytest.fixture
def client(session, grant_service):
    return CapabilityClient(session, authorizer=grant_service)


@pytest.fixture
async def tools(client, scripted_peer) -> dict[str, ToolDescriptor]:
    return {tool.name: tool for tool in await client.list_tools()}


@pytest.fixture
def token_context(grant_service):
    """Factory: a context holding a freshly issued bearer token."""

    def _token_context(scopes, **kwargs) -> CallerContext:
        token = grant_service.issue("alice", scopes)
        return CallerContext(**kwargs).with_token(token, grant_service.introspect(token))

    return _token_context


# ---------------------------------------------------------------------------
# Listing and handshake
# ---------------------------------------------------------------------------


class TestListTools:
    async def test_requirements_are_parsed(self, tools):
        assert tools["summarize"].requires == (Capability("mcp:sampling"),)
        assert tools["summarize"].description == "Summarize any text using an LLM"
        assert tools["summarize"].input_schema["properties"]["text"] == {"type": "string"}

    async def test_requirements_from_meta(self, tools):
        assert tools["deleteUser"].requires == (ScopePermission("admin:users:delete"),)

    async def test_absent_requires_means_none(self, tools):
        assert tools["legacyFileManager"].requires == ()
        assert tools["basicCalculator"].requires == ()

    async def test_follows_pagination(self, client, fake_peer):
        peer = ScriptedPeer(page_size=4)
        fake_peer.serve(peer)

        listed = await client.list_tools()

        assert [t.name for t in listed] == [t["name"] for t in LISTED_TOOLS]
        assert peer.list_cursors == [None, "4"]

    async def test_malformed_requirement_is_a_protocol_error(self, client, fake_peer):
        fake_peer.serve(ScriptedPeer(tools=[{"name": "bad", "requires": [{"anyOf": []}]}]))

        with pytest.raises(ProtocolError, match="Invalid tools/list result"):
            await client.list_tools()

    async def test_malformed_listing_is_a_protocol_error(self, client, fake_peer):
        fake_peer.serve(ScriptedPeer(tools=[{"description": "no name"}]))

        with pytest.raises(ProtocolError):
            await client.list_tools()

    async def test_too_deep_tool_is_kept_and_vetoed(self, client, fake_peer, caplog):
        deep: dict = {"type": "capability", "name": "mcp:sampling"}
        for _ in range(69):
            deep = {"not": deep}
        fake_peer.serve(ScriptedPeer(tools=[{"name": "ok", "requires": []}, {"name": "deep", "requires": [deep]}]))
        ctx = CallerContext(capabilities={"mcp:sampling"})

        with caplog.at_level(logging.WARNING, logger="mcp-client"):
            listed = {tool.name: tool for tool in await client.list_tools()}

        assert listed["ok"].requires == ()
        assert listed["deep"].requires == (NestedTooDeep(limit=settings.max_requirement_depth),)
        assert client.can_invoke(listed["ok"], ctx).satisfied
        assert not client.can_invoke(listed["deep"], ctx).satisfied
        with pytest.raises(RequirementsNotMet):
            await client.invoke(listed["deep"], {}, ctx)
        assert any(r.getMessage() == "Listed requirement too deep, tool will be vetoed" for r in caplog.records)

    def test_top_level_requires_wins_over_meta(self):
        tool = WireTool.model_validate(
            {
                "name": "t",
                "requires": [{"type": "capability", "name": "a"}],
                "_meta": {"requires": [{"type": "capability", "name": "b"}]},
            }
        )

        assert ToolDescriptor.from_wire(tool).requires == (Capability("a"),)


class TestInitialize:
    async def test_handshake(self, client, scripted_peer):
        ctx = CallerContext(capabilities={"mcp:sampling", "mcp:elicitation", "local-only"})

        result = await client.initialize(ctx)

        assert result.server_info.name == "scripted-peer"
        assert client.server_info is result
        assert scripted_peer.initialize_params["capabilities"] == {"elicitation": {}, "sampling": {}}
        assert scripted_peer.initialize_params["clientInfo"]["name"] == "mcp-requirements-client"
        assert scripted_peer.notifications == ["notifications/initialized"]

    async def test_invalid_result(self, client, fake_peer):
        fake_peer.serve(lambda m: make_result(m["id"], {"capabilities": {}}))

        with pytest.raises(ProtocolError, match="Invalid initialize result"):
            await client.initialize(CallerContext())

    def test_client_capabilities(self):
        assert client_capabilities(CallerContext(capabilities={"mcp:roots"})) == {"roots": {}}
        assert client_capabilities(CallerContext()) == {}


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestCapabilityGate:
    async def test_summarize_without_sampling_is_vetoed_locally(self, client, tools, scripted_peer):
        ctx = CallerContext()

        evaluation = client.can_invoke(tools["summarize"], ctx)
        assert not evaluation.satisfied
        assert evaluation.unmet == (Capability("mcp:sampling"),)

        with pytest.raises(RequirementsNotMet) as exc_info:
            await client.invoke(tools["summarize"], {"text": "long text"}, ctx)

        assert exc_info.value.tool == "summarize"
        assert exc_info.value.unmet == (Capability("mcp:sampling"),)
        assert "capability 'mcp:sampling'" in str(exc_info.value)
        assert scripted_peer.calls == []

    async def test_summarize_with_sampling_is_sent(self, client, tools, scripted_peer):
        ctx = CallerContext(capabilities={"mcp:sampling"})

        result = await client.invoke(tools["summarize"], {"text": "long text"}, ctx)

        assert result.text == "summarize ok"
        assert scripted_peer.calls == [{"name": "summarize", "arguments": {"text": "long text"}}]


class TestScopeRenegotiation:
    async def test_delete_user_after_grant(self, client, tools, scripted_peer, token_context):
        delete_user = tools["deleteUser"]
        ctx = token_context(["user:read"])

        with pytest.raises(RequirementsNotMet):
            await client.invoke(delete_user, {"userId": "u-1"}, ctx)
        assert scripted_peer.calls == []

        missing = unmet_scopes(client.can_invoke(delete_user, ctx))
        assert missing == ("admin:users:delete",)
        ctx = client.renegotiate(ctx, missing)

        assert ctx.scopes == {"user:read", "admin:users:delete"}
        assert client.can_invoke(delete_user, ctx).satisfied
        result = await client.invoke(delete_user, {"userId": "u-1"}, ctx)

        assert not result.is_error
        assert result.text == "deleteUser ok"
        sent = scripted_peer.calls[-1]
        assert sent["_meta"] == {"authorization": f"Bearer {ctx.bearer_token}"}

    async def test_undeclared_requirement_is_learned_from_the_error(
        self, client, tools, scripted_peer, token_context
    ):
        legacy = tools["legacyFileManager"]
        ctx = token_context([])
        assert client.can_invoke(legacy, ctx).satisfied

        with pytest.raises(ApplicationError) as exc_info:
            await client.invoke(legacy, {"action": "read", "path": "/etc/motd"}, ctx)

        error = exc_info.value
        assert error.result.is_error
        assert error.missing_scopes == ("filesystem:access",)

        ctx = client.renegotiate(ctx, error.missing_scopes)
        result = await client.invoke(legacy, {"action": "read", "path": "/etc/motd"}, ctx)

        assert result.text == "legacyFileManager ok"
        assert len(scripted_peer.calls) == 2

    async def test_error_response_is_classified(self, client, tools, scripted_peer):
        ctx = CallerContext(scopes={"accounts:read", "accounts:write"})

        with pytest.raises(ApplicationError) as exc_info:
            await client.invoke(tools["transferFunds"], {"amount": 5}, ctx)

        assert exc_info.value.rpc_code == -32000
        assert exc_info.value.missing_scopes == ("accounts:read", "accounts:write")

    async def test_renegotiate_without_authorizer_grants_locally(self, session):
        client = CapabilityClient(session)
        ctx = CallerContext(scopes={"user:read"})

        updated = client.renegotiate(ctx, ["accounts:read"])

        assert updated.scopes == {"user:read", "accounts:read"}
        assert ctx.scopes == {"user:read"}


class TestNestedDisjunction:
    async def test_owner_claim_satisfies_image_generator(self, client, tools, scripted_peer, token_context):
        ctx = token_context(
            ["agent:sample_image", "write:sample_storage"],
            capabilities={"mcp:sampling"},
            claims={"role": "owner"},
        )
        arguments = {"prompt": "a cat", "imageRepo": "gallery"}

        assert client.can_invoke(tools["imageGenerator"], ctx.with_inputs(arguments)).satisfied
        result = await client.invoke(tools["imageGenerator"], arguments, ctx)

        assert result.structured_content == {"arguments": arguments}

    async def test_input_alone_satisfies_image_generator(self, client, tools, scripted_peer):
        ctx = CallerContext(
            capabilities={"mcp:sampling"},
            scopes={"agent:sample_image", "write:sample_storage"},
        )

        with pytest.raises(RequirementsNotMet) as exc_info:
            await client.invoke(tools["imageGenerator"], {"prompt": "x", "imageRepo": "gallery"}, ctx)
        assert exc_info.value.unmet == (
            ClaimPermission("role", "admin"),
            ClaimPermission("role", "owner"),
            InputPermission("write", property="imageRepo"),
        )

        result = await client.invoke(tools["imageGenerator"], {"prompt": "x", "imageRepo": "write"}, ctx)
        assert not result.is_error


# ---------------------------------------------------------------------------
# Missing-scope classifier
# ---------------------------------------------------------------------------


class TestDefaultScopeClassifier:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Access denied: Missing required scope 'admin:users:delete'", ["admin:users:delete"]),
            ("missing required scopes: accounts:read, accounts:write", ["accounts:read", "accounts:write"]),
            (
                "Missing required scope 'filesystem:access' - this failure could have been prevented",
                ["filesystem:access"],
            ),
            (
                "Access denied for tool 'summarize': missing required scopes: a:b; "
                "unmet requirements: capability 'mcp:sampling'",
                ["a:b"],
            ),
            ("MISSING REQUIRED SCOPE: user:read.", ["user:read"]),
            ("Division by zero is not allowed", []),
            ("", []),
        ],
    )
    def test_extracts_scope_names(self, text, expected):
        assert default_scope_classifier(text) == expected

    async def test_custom_classifier(self, session, fake_peer, scripted_peer):
        client = CapabilityClient(session, classify_missing_scopes=lambda text: ["custom:scope"])
        legacy = ToolDescriptor(name="legacyFileManager")

        with pytest.raises(ApplicationError) as exc_info:
            await client.invoke(legacy, {}, CallerContext())

        assert exc_info.value.missing_scopes == ("custom:scope",)
