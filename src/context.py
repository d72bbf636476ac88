"""
The caller's declared and acquired state, evaluated against tool requirements.

CallerContext is an immutable snapshot. Evaluation never changes it; the only
way to change what a caller holds is to derive a new context through one of
the explicit operations (grant_scopes, revoke_scopes, with_token, ...).
Because every change produces a new value, an evaluation in flight always sees
a consistent snapshot and never races a scope grant.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

from src.auth import TokenInfo


def _freeze_resources(resources: Mapping[str, Iterable[str]]) -> dict[str, frozenset[str]]:
    return {uri: frozenset(values) for uri, values in resources.items()}


@dataclass(frozen=True)
class CallerContext:
    """
    Snapshot of what the caller holds.

    Attributes:
        capabilities: Capability names the caller advertises (e.g. "mcp:sampling")
        scopes: OAuth scopes currently granted
        claims: Identity claims, claim name -> value
        resource_permissions: Resource URI -> permission values held on it
        inputs: Arguments of the invocation being checked (for input predicates)
        bearer_token: Token presented to the peer, if any
    """

    capabilities: frozenset[str] = frozenset()
    scopes: frozenset[str] = frozenset()
    claims: Mapping[str, str] = field(default_factory=dict)
    resource_permissions: Mapping[str, frozenset[str]] = field(default_factory=dict)
    inputs: Mapping[str, Any] = field(default_factory=dict)
    bearer_token: str | None = None

    def __post_init__(self) -> None:
        # Accept lists/sets/dicts from callers, store owned immutable copies.
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        object.__setattr__(self, "scopes", frozenset(self.scopes))
        object.__setattr__(self, "claims", dict(self.claims))
        object.__setattr__(
            self, "resource_permissions", _freeze_resources(self.resource_permissions)
        )
        object.__setattr__(self, "inputs", dict(self.inputs))

    def grant_scopes(self, scopes: Iterable[str]) -> "CallerContext":
        return replace(self, scopes=self.scopes | frozenset(scopes))

    def revoke_scopes(self, scopes: Iterable[str]) -> "CallerContext":
        return replace(self, scopes=self.scopes - frozenset(scopes))

    def with_inputs(self, arguments: Mapping[str, Any]) -> "CallerContext":
        return replace(self, inputs=arguments)

    def with_token(self, token: str, info: TokenInfo) -> "CallerContext":
        """
        Adopt a (re-)issued bearer token.

        The token's scopes replace the current scope set and its identity
        claims are merged over the existing ones.
        """
        return replace(
            self,
            bearer_token=token,
            scopes=frozenset(info.scopes),
            claims={**self.claims, **info.claims},
        )
