"""
Requirement declarations for the demo peer's tools.

This module is the central registry of what each tool needs from its caller,
in the JSON wire form that travels in a tools/list result:

    TOOL_REQUIREMENTS = {
        "tool_name": [<requirement>, ...],
    }

The server (src/server.py) attaches each list to its tool as
`_meta.requires` so clients can check before calling, and its middleware
evaluates the parsed form (TOOL_EXPRESSIONS) on every tools/call so that a
client which skips the check is still refused.

A tool with an empty list can run for any caller. A tool missing from the map
declares nothing; that is the legacy situation in which the caller only
finds out what was needed from the error message.

Scope naming convention: "<resource>:<action>" (e.g., "user:read",
"admin:users:delete"), as is common in OAuth2.
"""

from src.requirements import parse_requirements


def _scope(value: str) -> dict:
    return {"type": "permission", "subType": "scope", "value": value}


TOOL_REQUIREMENTS: dict[str, list[dict]] = {
    # Needs an LLM on the caller's side.
    "summarize": [
        {"type": "capability", "name": "mcp:sampling"},
    ],
    # Sampling, two scopes, and one of: an admin/owner identity, or write
    # access declared on the target repo.
    "imageGenerator": [
        {"type": "capability", "name": "mcp:sampling"},
        {
            "anyOf": [
                {"type": "permission", "subType": "claim", "name": "role", "value": "admin"},
                {"type": "permission", "subType": "claim", "name": "role", "value": "owner"},
                {"type": "permission", "subType": "input", "property": "imageRepo", "value": "write"},
            ]
        },
        _scope("agent:sample_image"),
        _scope("write:sample_storage"),
    ],
    "basicCalculator": [],
    # Reads only need filesystem access; anything else also needs write.
    "modernFileManager": [
        _scope("filesystem:access"),
        {
            "anyOf": [
                {"type": "permission", "subType": "input", "property": "action", "value": "read"},
                _scope("filesystem:write"),
            ]
        },
    ],
    "readUserProfile": [_scope("user:read")],
    "deleteUser": [_scope("admin:users:delete")],
    "transferFunds": [
        {"allOf": [_scope("accounts:read"), _scope("accounts:write")]},
    ],
}

# Parsed once at import; a malformed declaration fails loudly here.
TOOL_EXPRESSIONS = {name: parse_requirements(wire) for name, wire in TOOL_REQUIREMENTS.items()}
