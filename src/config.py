"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables. Both halves of the project read from the same
settings object:

- The client side (session, correlator, evaluator) reads the request timeout,
  the read chunk size and the requirement depth ceiling.
- The demo peer (src/server.py) reads the host, port and log level.
- The authorization collaborator (src/auth.py) reads the JWT secret, algorithm
  and token lifetime.

Locally, you can set them via environment variables or a .env file.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `request_timeout_seconds` reads from
    MCP_REQUEST_TIMEOUT_SECONDS, `jwt_secret_key` reads from MCP_JWT_SECRET_KEY.
    """

    # --- Demo peer settings ---

    # "stdio" (default) or "streamable-http".
    transport: str = "stdio"

    # Network interface and port for the demo peer's HTTP transport.
    # The stdio transport ignores both.
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging verbosity. Maps to Python's logging levels.
    log_level: str = "info"

    # --- Authorization collaborator ---

    # The secret key used to sign and validate bearer tokens.
    # Default is for local development only - NEVER use this in production.
    jwt_secret_key: str = "dev-secret-change-me"

    # HS256 = HMAC with SHA-256, the same key signs and verifies.
    jwt_algorithm: str = "HS256"

    # Lifetime of tokens issued or re-issued by a scope grant.
    token_ttl_hours: float = 8.0

    # --- Transport ---

    # Default deadline for a correlated call when the caller passes none.
    request_timeout_seconds: float = 10.0

    # Maximum number of bytes pulled from the peer per read.
    read_chunk_size: int = 65536

    # --- Requirement evaluation ---

    # Requirement trees nested deeper than this are rejected (fail closed).
    max_requirement_depth: int = 64

    # --- Handshake ---

    protocol_version: str = "2025-06-18"
    client_name: str = "mcp-requirements-client"
    client_version: str = "1.0.0"

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


# Singleton instance: import this from other modules.
settings = Settings()
