"""
Shared test fixtures.

Pytest fixtures are reusable setup functions that tests can request by name.
They run before each test and provide the test with preconfigured objects.

Key fixtures:
- make_token / make_auth_header: factories for JWT tokens with any claims
- grant_service: a ScopeGrantService signing with the test secret
- fake_peer: the far end of a DuplexSession, scripted by the test
- session: a started DuplexSession connected to fake_peer

Testing approach:
- test_requirements.py, test_evaluator.py, test_context.py: the requirement
  model and caller context, pure functions
- test_framing.py, test_correlator.py: transport building blocks in isolation
- test_session.py, test_client.py: the session and client against fake_peer,
  which stands in for a peer process on the other end of a pipe (bytes go
  through a real asyncio.StreamReader, in arbitrary chunks if the test wants)
- test_server.py: the demo peer through fastmcp.Client, through its ASGI app
  with httpx, and as a child process on stdio
"""

import asyncio
import datetime
from typing import Any, Callable

import jwt
import pytest

from src.auth import ScopeGrantService
from src.config import settings
from src.framing import FrameCodec
from src.session import DuplexSession

# ---------------------------------------------------------------------------
# Known test secret
# ---------------------------------------------------------------------------
# This must match settings.jwt_secret_key so that tokens generated in tests
# are accepted by validate_token(). The default is "dev-secret-change-me".
TEST_SECRET = settings.jwt_secret_key
TEST_ALGORITHM = settings.jwt_algorithm


# ---------------------------------------------------------------------------
# Token factory fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token():
    """
    Factory fixture to generate JWT tokens for testing.

    Returns a callable that creates tokens with configurable claims.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="alice", scopes=["user:read"])
            # token is a raw JWT string (not "Bearer ..." prefixed)
    """

    def _make_token(
        sub: str = "test-user",
        scopes: list[str] | None = None,
        secret: str = TEST_SECRET,
        algorithm: str = TEST_ALGORITHM,
        exp_hours: float = 1.0,
        extra_claims: dict | None = None,
        include_exp: bool = True,
        include_sub: bool = True,
    ) -> str:
        """
        Generate a signed JWT token with the given claims.

        Args:
            sub: Subject claim (who the token identifies)
            scopes: List of scopes (None means omit the claim entirely)
            secret: Signing key
            algorithm: JWT algorithm
            exp_hours: Hours until expiration (negative = already expired)
            extra_claims: Additional claims to include in the payload
            include_exp: Whether to include the exp claim
            include_sub: Whether to include the sub claim
        """
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {}

        if include_sub:
            payload["sub"] = sub

        if scopes is not None:
            payload["scope"] = scopes

        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)

        payload["iat"] = now

        if extra_claims:
            payload.update(extra_claims)

        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_token


@pytest.fixture
def make_auth_header(make_token):
    """
    Convenience fixture that returns a full "Bearer <token>" string.

    Usage in tests:
        def test_something(make_auth_header):
            header = make_auth_header(sub="alice", scopes=["user:read"])
            # header is "Bearer eyJhbGci..."
    """

    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_token(**kwargs)}"

    return _make_auth_header


@pytest.fixture
def grant_service() -> ScopeGrantService:
    return ScopeGrantService(secret=TEST_SECRET, algorithm=TEST_ALGORITHM, ttl_hours=1)


# ---------------------------------------------------------------------------
# Fake peer
# ---------------------------------------------------------------------------


class FakePeer:
    """
    The other end of a DuplexSession.

    The session reads from `reader` (a real asyncio.StreamReader the test feeds)
    and writes to the FakePeer itself, which decodes every frame it receives
    and queues the message for the test (or hands it to the responder).

    A test either scripts the exchange by hand:

        request = await peer.next_message()
        peer.send(make_result(request["id"], {...}))

    or installs a responder that answers everything it receives:

        peer.serve(lambda message: make_result(message["id"], {}))
    """

    def __init__(self) -> None:
        self.reader = asyncio.StreamReader()
        self.received: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.fail_writes = False
        self._codec = FrameCodec()
        self._respond: Callable[[dict], Any] | None = None

    # --- ByteWriter side (called by the session) ---

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise BrokenPipeError("peer is gone")
        for frame in self._codec.feed(data):
            if self._respond is None:
                self.received.put_nowait(frame.message)
                continue
            reply = self._respond(frame.message)
            if reply is not None:
                self.send(reply)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    # --- Peer side (called by the test) ---

    def send(self, message: dict) -> None:
        self.reader.feed_data(FrameCodec.encode(message))

    def send_raw(self, data: bytes) -> None:
        self.reader.feed_data(data)

    def hang_up(self) -> None:
        self.reader.feed_eof()

    async def next_message(self, timeout: float = 1.0) -> dict:
        return await asyncio.wait_for(self.received.get(), timeout)

    def serve(self, respond: Callable[[dict], Any]) -> None:
        """
        Answer every message from now on with respond(message), unless it returns None.

        Replies are fed back as soon as the session writes, before it even
        awaits its response.
        """
        self._respond = respond


@pytest.fixture
async def fake_peer():
    return FakePeer()


@pytest.fixture
async def session(fake_peer):
    """A started session talking to fake_peer, with a short default timeout."""
    session = DuplexSession(fake_peer.reader, fake_peer, timeout=1.0)
    session.start()
    yield session
    await session.close()
