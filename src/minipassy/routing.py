"""Alias table and fallback policy.

An alias is the public model name callers send in the ``model`` field. It maps
to an ordered list of (provider, upstream model) targets that are tried in
declared order, primary first. There is no re-ordering by latency or cost.

Whether a failed target advances to the next one depends on the alias's
fallback policy: the set of failure classes (5xx, timeout, rate limit) that
justify trying the next target. Any other outcome is relayed to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum

from minipassy.errors import RoutingError

logger = logging.getLogger(__name__)


class FailureClass(Enum):
    """Upstream failure classes that may trigger a fallback."""

    SERVER_ERROR = "5xx"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"

    @classmethod
    def parse(cls, value: str) -> FailureClass:
        """Parse a policy token such as ``5xx`` or ``rate_limit``.

        Raises:
            ValueError: If the token names no known class
        """
        token = value.strip().lower().replace("-", "_")
        aliases = {"429": "rate_limit", "ratelimit": "rate_limit", "server_error": "5xx"}
        return cls(aliases.get(token, token))


DEFAULT_FALLBACK_ON: frozenset[FailureClass] = frozenset(FailureClass)


def classify_status(status: int) -> FailureClass | None:
    """Classify an upstream HTTP status.

    Returns:
        RATE_LIMIT for 429, SERVER_ERROR for 5xx, None for anything else
    """
    if status == 429:
        return FailureClass.RATE_LIMIT
    if 500 <= status <= 599:
        return FailureClass.SERVER_ERROR
    return None


@dataclass(frozen=True)
class Target:
    """A (provider, upstream model) pair considered during dispatch."""

    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


@dataclass(frozen=True)
class Alias:
    """Public model name resolved to one or more provider targets.

    Attributes:
        name: Public name (lower-cased)
        targets: Targets in declared order, primary first
        fallback_on: Failure classes that advance to the next target
    """

    name: str
    targets: tuple[Target, ...]
    fallback_on: frozenset[FailureClass] = DEFAULT_FALLBACK_ON

    @property
    def primary(self) -> Target | None:
        return self.targets[0] if self.targets else None

    def should_fall_back(self, failure: FailureClass | None) -> bool:
        """Whether a failure of this class justifies trying the next target."""
        return failure is not None and failure in self.fallback_on


@dataclass
class AliasTable:
    """Case-insensitive lookup of aliases by public name.

    Example:
        >>> table = AliasTable.from_aliases([
        ...     Alias("fast", (Target("groq", "llama-3"), Target("openai", "llama-3"))),
        ... ])
        >>> table.resolve("FAST").primary
        Target(provider='groq', model='llama-3')
    """

    _aliases: dict[str, Alias] = field(default_factory=dict)

    @classmethod
    def from_aliases(cls, aliases: Iterable[Alias] | Mapping[str, Alias]) -> AliasTable:
        items = aliases.values() if isinstance(aliases, Mapping) else aliases
        table = cls()
        for alias in items:
            table.add(alias)
        return table

    def add(self, alias: Alias) -> None:
        """Register an alias. Aliases without targets are rejected."""
        if not alias.targets:
            raise RoutingError(
                f"Alias '{alias.name}' has no targets", status=400, code="no_targets"
            )
        self._aliases[alias.name.lower()] = alias

    def resolve(self, name: object) -> Alias:
        """Look up an alias by public name.

        Raises:
            RoutingError: 400 when no name was given or it is not a string,
                404 when it is unknown
        """
        if name is None or name == "":
            raise RoutingError(
                "Missing 'model' field in request body", status=400, code="missing_model"
            )
        if not isinstance(name, str):
            raise RoutingError("'model' must be a string", status=400, code="invalid_model")
        alias = self._aliases.get(name.lower())
        if alias is None:
            raise RoutingError(f"Unknown model: {name.lower()}")
        return alias

    def names(self) -> list[str]:
        return list(self._aliases)

    def __iter__(self) -> Iterator[Alias]:
        return iter(self._aliases.values())

    def __len__(self) -> int:
        return len(self._aliases)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._aliases
