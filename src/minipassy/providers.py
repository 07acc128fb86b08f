"""Provider registry.

A ``Provider`` is the runtime view of a configured upstream: its static
definition plus what capability discovery learned about it (which wire
formats it answers, which models it serves). Discovery mutates providers once
at boot; afterwards they are read-only except for the credential cursor.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Literal

from minipassy.config import ProviderConfig

WireFormat = Literal["openai", "anthropic"]

ANTHROPIC_VERSION = "2023-06-01"


class CredentialCursor:
    """Round-robin cursor over a provider's credentials.

    ``next()`` is safe to call from concurrent tasks and threads: every call
    returns the credential after the previous call's, so ``[k1, k2, k3]``
    yields ``k1, k2, k3, k1, ...`` with no duplicate or skipped picks.
    """

    def __init__(self, credentials: Iterable[str]):
        self._credentials = tuple(credentials)
        if not self._credentials:
            raise ValueError("CredentialCursor needs at least one credential")
        self._index = 0
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            credential = self._credentials[self._index]
            self._index = (self._index + 1) % len(self._credentials)
        return credential

    def peek(self) -> str:
        """Credential the next call would return, without advancing."""
        with self._lock:
            return self._credentials[self._index]

    def __len__(self) -> int:
        return len(self._credentials)


@dataclass
class Provider:
    """Runtime state of one upstream provider.

    Attributes:
        config: Static definition (name, URL, credentials)
        openai: Answers the bearer-token format (``/v1/chat/completions``)
        anthropic: Answers the api-key format (``/v1/messages``)
        models: Discovered model ids, de-duplicated, in discovery order
        discovered: Discovery has run for this provider
    """

    config: ProviderConfig
    openai: bool = False
    anthropic: bool = False
    models: list[str] = field(default_factory=list)
    discovered: bool = False
    cursor: CredentialCursor = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.cursor = CredentialCursor(self.config.credentials)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def routable(self) -> bool:
        """Whether at least one wire format was discovered."""
        return self.openai or self.anthropic

    def supports(self, fmt: WireFormat) -> bool:
        return self.openai if fmt == "openai" else self.anthropic

    def serves(self, model: str) -> bool:
        return model in self.models

    def merge_models(self, model_ids: Iterable[str]) -> None:
        """Add model ids, skipping ones already known."""
        known = set(self.models)
        for model_id in model_ids:
            if model_id not in known:
                known.add(model_id)
                self.models.append(model_id)

    def choose_format(self, preferred: WireFormat) -> WireFormat | None:
        """Pick the wire format to talk to this provider in.

        The caller's own convention wins when the provider speaks it, so no
        conversion is needed. Otherwise the other discovered format is used.
        """
        if self.supports(preferred):
            return preferred
        other: WireFormat = "anthropic" if preferred == "openai" else "openai"
        if self.supports(other):
            return other
        return None

    def auth_headers(self, fmt: WireFormat, credential: str | None = None) -> dict[str, str]:
        """Build auth headers for one call; bearer XOR api-key + version.

        Args:
            fmt: Wire format of the call
            credential: Key to use; defaults to the next one from the cursor
        """
        key = credential if credential is not None else self.cursor.next()
        if fmt == "openai":
            return {"Authorization": f"Bearer {key}"}
        return {"x-api-key": key, "anthropic-version": ANTHROPIC_VERSION}

    def summary(self) -> dict[str, object]:
        """Inventory entry for /health."""
        return {
            "name": self.name,
            "models": len(self.models),
            "openai": self.openai,
            "anthropic": self.anthropic,
        }


@dataclass
class ProviderRegistry:
    """Providers by id. Ids are unique."""

    _providers: dict[str, Provider] = field(default_factory=dict)

    @classmethod
    def from_configs(cls, configs: Iterable[ProviderConfig]) -> ProviderRegistry:
        registry = cls()
        for config in configs:
            registry.add(Provider(config=config))
        return registry

    def add(self, provider: Provider) -> None:
        if provider.name in self._providers:
            raise ValueError(f"Duplicate provider id: {provider.name}")
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name.lower())

    def names(self) -> list[str]:
        return list(self._providers)

    def __iter__(self) -> Iterator[Provider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._providers
