"""Provider resolution: configuration -> live, authenticated adapter."""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable

import httpx

from pocketcoder.auth.codex import CodexTokens, refresh_access_token
from pocketcoder.config import FailoverRuleConfig, get_config
from pocketcoder.credentials import CredentialStore, ProviderConfigStore
from pocketcoder.exceptions import PersistenceError, ProviderInstantiationError, TokenRefreshError
from pocketcoder.llm import LLMProvider, create_provider
from pocketcoder.logging import get_logger
from pocketcoder.models import ProviderConfiguration

log = get_logger(__name__)

TokenRefresher = Callable[[str], Awaitable[CodexTokens]]
ModelNormalizer = Callable[[str], str]

# Registry ids whose OAuth configurations can exchange a refresh token.
DEFAULT_REFRESHERS: dict[str, TokenRefresher] = {"openai": refresh_access_token}


# ── Model id normalization ───────────────────────────────────────────

_normalizers: dict[str, list[ModelNormalizer]] = {}


def register_model_normalizer(registry_id: str, normalizer: ModelNormalizer) -> None:
    """Register a legacy model-id rewrite applied when resolving ``registry_id``."""
    _normalizers.setdefault(registry_id, []).append(normalizer)


def normalize_model_id(registry_id: str, model_id: str) -> str:
    for normalizer in _normalizers.get(registry_id, []):
        model_id = normalizer(model_id)
    return model_id


def _collapse_kimi_for_coding(model_id: str) -> str:
    if model_id.startswith("kimi-for-coding/"):
        return "kimi-for-coding"
    return model_id


register_model_normalizer("kimi-coding", _collapse_kimi_for_coding)


def normalize_configuration(configuration: ProviderConfiguration) -> ProviderConfiguration:
    """Return ``configuration`` with registered model-id rewrites applied."""
    registry = configuration.registry_id
    default = normalize_model_id(registry, configuration.default_model_id)
    selected = (
        normalize_model_id(registry, configuration.selected_model_id)
        if configuration.selected_model_id
        else None
    )
    if default == configuration.default_model_id and selected == configuration.selected_model_id:
        return configuration
    return replace(configuration, default_model_id=default, selected_model_id=selected)


# ── Data ─────────────────────────────────────────────────────────────


@dataclass
class ResolvedProvider:
    """A provider configuration paired with its live adapter."""

    configuration: ProviderConfiguration
    adapter: LLMProvider

    @property
    def model_id(self) -> str:
        return self.configuration.effective_model_id


@dataclass(frozen=True)
class FailoverRule:
    """Vendor hard-rejection that triggers a provider switch."""

    registry_id: str
    error_marker: str
    preferred_registries: tuple[str, ...] = field(default_factory=tuple)
    label: str = ""

    @classmethod
    def from_config(cls, rule: FailoverRuleConfig) -> "FailoverRule":
        return cls(
            registry_id=rule.registry_id,
            error_marker=rule.error_marker,
            preferred_registries=tuple(rule.preferred_registries),
            label=rule.label or rule.registry_id,
        )

    def matches(self, configuration: ProviderConfiguration, error_message: str) -> bool:
        return (
            configuration.registry_id == self.registry_id
            and self.error_marker.lower() in (error_message or "").lower()
        )


def configured_failover_rules() -> list[FailoverRule]:
    config = get_config()
    if not config.failover.enabled:
        return []
    return [FailoverRule.from_config(rule) for rule in config.failover.rules]


def _newest_first(configurations: list[ProviderConfiguration]) -> list[ProviderConfiguration]:
    return sorted(configurations, key=lambda c: c.created_at, reverse=True)


# ── Factory ──────────────────────────────────────────────────────────


class ProviderFactory:
    """Instantiates adapters from stored credentials.

    Token refresh is serialized per configuration id so two concurrent
    refreshes cannot invalidate each other's new token.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        refreshers: dict[str, TokenRefresher] | None = None,
        refresh_margin_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.credentials = credentials
        self.refreshers = dict(DEFAULT_REFRESHERS if refreshers is None else refreshers)
        if refresh_margin_seconds is None:
            refresh_margin_seconds = get_config().credentials.refresh_margin_seconds
        self.refresh_margin_seconds = refresh_margin_seconds
        self.client = client
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, config_id: str) -> asyncio.Lock:
        lock = self._locks.get(config_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[config_id] = lock
        return lock

    async def create(self, configuration: ProviderConfiguration) -> LLMProvider | None:
        """Fast path: build an adapter from cached credentials, or None."""
        credentials = await self.credentials.load(configuration.id)
        try:
            return create_provider(configuration, credentials, client=self.client)
        except ProviderInstantiationError as e:
            log.warning(
                "Provider instantiation failed",
                config_id=configuration.id,
                registry=configuration.registry_id,
                error=str(e),
            )
            return None

    async def create_with_refresh(self, configuration: ProviderConfiguration) -> LLMProvider | None:
        """Refresh an expired OAuth access token if possible, then create."""
        await self.refresh_if_needed(configuration)
        return await self.create(configuration)

    async def refresh_if_needed(self, configuration: ProviderConfiguration) -> bool:
        """Exchange the refresh token when the access token is missing or expired.

        Returns:
            True if new tokens were stored
        """
        refresher = self.refreshers.get(configuration.registry_id)
        if not configuration.is_oauth or refresher is None:
            return False

        async with self._lock_for(configuration.id):
            # Re-read under the lock; a concurrent caller may have refreshed already.
            stored = await self.credentials.load(configuration.id)
            if not stored.refresh_token:
                return False
            if not stored.access_token_expired(margin_seconds=self.refresh_margin_seconds):
                return False

            try:
                tokens = await refresher(stored.refresh_token)
            except TokenRefreshError as e:
                log.warning("Token refresh failed", config_id=configuration.id, error=str(e))
                return False

            await self.credentials.save_tokens(
                configuration.id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
                account_id=tokens.account_id,
            )
            log.info("Stored refreshed OAuth tokens", config_id=configuration.id)
            return True


# ── Resolver ─────────────────────────────────────────────────────────


class ProviderResolver:
    """Turns a desired configuration into a live adapter with sibling fallback."""

    def __init__(self, factory: ProviderFactory, config_store: ProviderConfigStore | None = None):
        self.factory = factory
        self.config_store = config_store

    @staticmethod
    def build_candidates(
        preferred: ProviderConfiguration,
        all_configurations: list[ProviderConfiguration],
    ) -> list[ProviderConfiguration]:
        """Preferred first, then same-registry siblings newest first.

        Only configurations present in ``all_configurations`` are returned.
        """
        by_id = {c.id: c for c in all_configurations}
        candidates: list[ProviderConfiguration] = []
        if preferred.id in by_id:
            candidates.append(by_id[preferred.id])
        siblings = [
            c
            for c in all_configurations
            if c.registry_id == preferred.registry_id and c.id != preferred.id
        ]
        candidates.extend(_newest_first(siblings))
        return candidates

    @staticmethod
    def failover_candidates(
        current: ProviderConfiguration,
        all_configurations: list[ProviderConfiguration],
        rule: FailoverRule,
    ) -> list[ProviderConfiguration]:
        """Preferred alternate registries in rule order, then any other provider.

        Within each group the most recently created configuration comes first.
        Configurations of the rejecting registry are never candidates.
        """
        others = [
            c
            for c in all_configurations
            if c.id != current.id and c.registry_id != rule.registry_id
        ]
        ordered: list[ProviderConfiguration] = []
        for registry in rule.preferred_registries:
            ordered.extend(_newest_first([c for c in others if c.registry_id == registry]))
        preferred = set(rule.preferred_registries)
        ordered.extend(_newest_first([c for c in others if c.registry_id not in preferred]))
        return ordered

    async def _normalized(self, configuration: ProviderConfiguration) -> ProviderConfiguration:
        normalized = normalize_configuration(configuration)
        if normalized is configuration:
            return configuration
        log.info(
            "Normalized legacy model id",
            config_id=configuration.id,
            old=configuration.effective_model_id,
            new=normalized.effective_model_id,
        )
        if self.config_store is not None:
            try:
                await self.config_store.update(normalized)
            except PersistenceError as e:
                log.warning("Could not persist normalized model id", config_id=configuration.id, error=str(e))
        return normalized

    async def _first_viable(self, candidates: list[ProviderConfiguration]) -> ResolvedProvider | None:
        for candidate in candidates:
            configuration = await self._normalized(candidate)
            adapter = await self.factory.create_with_refresh(configuration)
            if adapter is not None:
                return ResolvedProvider(configuration=configuration, adapter=adapter)
        return None

    async def resolve(
        self,
        preferred: ProviderConfiguration,
        all_configurations: list[ProviderConfiguration],
    ) -> ResolvedProvider | None:
        """Return the first candidate that instantiates, or None."""
        candidates = self.build_candidates(preferred, all_configurations)
        resolved = await self._first_viable(candidates)
        if resolved is None:
            log.warning("No provider configuration could be instantiated", preferred=preferred.id)
        elif resolved.configuration.id != preferred.id:
            log.info(
                "Fell back to sibling provider configuration",
                preferred=preferred.id,
                resolved=resolved.configuration.id,
            )
        return resolved

    async def resolve_failover(
        self,
        current: ProviderConfiguration,
        all_configurations: list[ProviderConfiguration],
        rule: FailoverRule,
    ) -> ResolvedProvider | None:
        """Find the next viable provider after a hard rejection from ``current``."""
        return await self._first_viable(self.failover_candidates(current, all_configurations, rule))
