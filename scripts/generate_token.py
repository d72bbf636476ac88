"""
CLI utility to mint bearer tokens for the demo peer.

In a real deployment tokens come from an identity provider. Here
ScopeGrantService (src/auth.py) plays that role: it signs tokens with
MCP_JWT_SECRET_KEY, so any peer configured with the same secret accepts them.

Usage examples:

    # Token that can read user profiles
    python -m scripts.generate_token --sub alice --scope user:read

    # Several scopes plus an identity claim (for claim requirements)
    python -m scripts.generate_token --sub alice --scope agent:sample_image write:sample_storage \\
        --claim role=owner

    # Short-lived token issued to a named OAuth client
    python -m scripts.generate_token --sub ci-agent --scope accounts:read --client-id ci --exp-hours 0.5

    # Expired token (for testing rejection)
    python -m scripts.generate_token --sub alice --scope user:read --exp-hours -1

Over streamable-http, send it as a header:

    curl -X POST http://localhost:8080/mcp \\
      -H "Content-Type: application/json" \\
      -H "Authorization: Bearer <token>" \\
      -d '{"jsonrpc":"2.0","id":1,"method":"initialize",...}'

Over stdio, CapabilityClient sends it in the tools/call `_meta.authorization`.
"""

import argparse
import datetime

from src.auth import ScopeGrantService
from src.config import settings


def parse_claim(text: str) -> tuple[str, str]:
    """Parse a NAME=VALUE command line argument."""
    name, sep, value = text.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {text!r}")
    return name, value


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Mint bearer tokens for the MCP requirements demo peer.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Read access only:
    %(prog)s --sub alice --scope user:read

  Identity claim:
    %(prog)s --sub alice --scope agent:sample_image --claim role=admin

  Expired token (for testing):
    %(prog)s --sub alice --scope user:read --exp-hours -1
        """,
    )

    parser.add_argument(
        "--sub",
        required=True,
        help="Subject claim: who/what this token identifies (e.g., 'alice', 'ci-agent')",
    )
    parser.add_argument(
        "--scope",
        nargs="+",
        default=[],
        help="Space-separated list of scopes (e.g., user:read accounts:read)",
    )
    parser.add_argument(
        "--claim",
        type=parse_claim,
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Identity claim to embed, repeatable (e.g., role=admin)",
    )
    parser.add_argument("--client-id", default=None, help="OAuth client the token is issued to")
    parser.add_argument(
        "--secret",
        default=settings.jwt_secret_key,
        help="JWT signing secret (must match the peer's MCP_JWT_SECRET_KEY)",
    )
    parser.add_argument(
        "--algorithm",
        default=settings.jwt_algorithm,
        help="JWT signing algorithm (default: %(default)s)",
    )
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=settings.token_ttl_hours,
        help="Hours until token expires (negative = already expired, default: %(default)s)",
    )

    args = parser.parse_args(argv)

    service = ScopeGrantService(secret=args.secret, algorithm=args.algorithm, ttl_hours=args.exp_hours)
    token = service.issue(
        args.sub,
        args.scope,
        client_id=args.client_id,
        claims=dict(args.claim),
    )

    exp_time = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
        hours=args.exp_hours
    )

    print(f"Subject:    {args.sub}")
    print(f"Scopes:     {sorted(set(args.scope))}")
    if args.claim:
        print(f"Claims:     {dict(args.claim)}")
    if args.client_id:
        print(f"Client:     {args.client_id}")
    print(f"Expires:    {exp_time.isoformat()}")
    print(f"Algorithm:  {args.algorithm}")
    print()
    print(f"Token: {token}")


if __name__ == "__main__":
    main()
