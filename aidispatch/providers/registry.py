"""Provider registry: canonical provider ids, their models and per-use credit cost.

Built once at startup from ``PROVIDERS`` and ``LEGACY_ALIASES`` and read-only
afterwards. Construction fails on any id/alias collision so a new provider can
never silently shadow a deprecated name.

Usage:
    registry = get_registry()
    descriptor = registry.resolve("claude-4")   # -> anthropic-claude4-opus
    descriptor.cost                             # Decimal('3.00')
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from functools import lru_cache
from typing import Iterable, Literal, Mapping

from aidispatch.core.config import Settings, get_settings
from aidispatch.core.exceptions import RegistryConfigError, UnknownProviderError

Tier = Literal["premium", "standard", "fallback"]


@dataclass(frozen=True)
class ProviderDescriptor:
    """
    One concrete provider/model the dispatcher can invoke.

    Attributes:
        id: Canonical provider identifier (e.g. 'openai-gpt5')
        model: Model name sent to the vendor API
        cost: Credits charged per successful use
        vendor: Vendor family, matched against a user's stored API key
        display_name: Human-readable name
        tier: Capability tier
        aliases: Deprecated identifiers that resolve to this id
    """
    id: str
    model: str
    cost: Decimal
    vendor: str
    display_name: str
    tier: Tier = "standard"
    aliases: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_free(self) -> bool:
        return self.cost == 0

    @property
    def formatted_cost(self) -> str:
        return "Free" if self.is_free else f"{self.cost:.1f} credits"


PROVIDERS: tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor("openai-gpt5", "gpt-5", Decimal("2.00"), "openai", "OpenAI GPT-5", "premium"),
    ProviderDescriptor("openai-gpt5-mini", "gpt-5-mini", Decimal("1.00"), "openai", "OpenAI GPT-5 Mini"),
    ProviderDescriptor("anthropic-claude4-opus", "claude-opus-4", Decimal("3.00"), "anthropic", "Anthropic Claude 4 Opus", "premium"),
    ProviderDescriptor("anthropic-claude4-sonnet", "claude-sonnet-4", Decimal("2.00"), "anthropic", "Anthropic Claude 4 Sonnet"),
    ProviderDescriptor("anthropic-claude", "claude-3-5-sonnet-20241022", Decimal("1.50"), "anthropic", "Anthropic Claude 3.5 Sonnet"),
    ProviderDescriptor("mock", "mock-model", Decimal("0.00"), "mock", "Mock Provider", "fallback"),
)

# Deprecated names kept for clients that still send them. Do not edit existing entries.
LEGACY_ALIASES: Mapping[str, str] = {
    "chatgpt-5": "openai-gpt5",
    "gpt-5": "openai-gpt5",
    "openai": "openai-gpt5",
    "gpt-5-mini": "openai-gpt5-mini",
    "claude-4": "anthropic-claude4-opus",
    "claude-opus-4": "anthropic-claude4-opus",
    "claude-sonnet-4": "anthropic-claude4-sonnet",
    "anthropic": "anthropic-claude",
}

VENDOR_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "mock": "Mock",
}


class ProviderRegistry:
    def __init__(self, providers: Iterable[ProviderDescriptor], aliases: Mapping[str, str]) -> None:
        by_id: dict[str, ProviderDescriptor] = {}
        for p in providers:
            if p.id in by_id:
                raise RegistryConfigError(f"Duplicate provider id: {p.id}")
            if p.cost < 0:
                raise RegistryConfigError(f"Provider {p.id} has negative cost")
            by_id[p.id] = p

        alias_map: dict[str, str] = {}
        for alias, target in aliases.items():
            if alias in by_id:
                raise RegistryConfigError(f"Alias '{alias}' collides with canonical provider id")
            if target not in by_id:
                raise RegistryConfigError(f"Alias '{alias}' points at unknown provider '{target}'")
            alias_map[alias] = target

        for target in set(alias_map.values()):
            names = frozenset(a for a, t in alias_map.items() if t == target)
            by_id[target] = replace(by_id[target], aliases=names)

        self._providers = by_id
        self._aliases = alias_map

    def resolve(self, requested_id: str) -> ProviderDescriptor:
        """Exact canonical match first, then the legacy alias table."""
        key = (requested_id or "").strip()
        descriptor = self._providers.get(key)
        if descriptor is None and key in self._aliases:
            descriptor = self._providers[self._aliases[key]]
        if descriptor is None:
            raise UnknownProviderError(key)
        return descriptor

    def get(self, provider_id: str) -> ProviderDescriptor | None:
        return self._providers.get(provider_id)

    def canonical_id(self, requested_id: str) -> str:
        return self.resolve(requested_id).id

    def all(self) -> list[ProviderDescriptor]:
        return list(self._providers.values())

    @property
    def aliases(self) -> Mapping[str, str]:
        return dict(self._aliases)

    def display_name(self, provider_id: str) -> str:
        descriptor = self._providers.get(provider_id)
        if descriptor is None and provider_id in self._aliases:
            descriptor = self._providers[self._aliases[provider_id]]
        if descriptor is not None:
            return descriptor.display_name
        return provider_id.replace("-", " ").capitalize()

    def fallback_chain(self, first: ProviderDescriptor, configured: Iterable[str]) -> list[ProviderDescriptor]:
        """``first`` followed by the configured fallbacks, deduplicated, in order."""
        chain = [first]
        for provider_id in configured:
            descriptor = self.resolve(provider_id)
            if descriptor not in chain:
                chain.append(descriptor)
        return chain

    def available_providers(self, settings: Settings | None = None) -> list[dict]:
        settings = settings or get_settings()
        return [
            {
                "id": p.id,
                "display_name": p.display_name,
                "model": p.model,
                "vendor": p.vendor,
                "vendor_name": VENDOR_NAMES.get(p.vendor, p.vendor.capitalize()),
                "tier": p.tier,
                "cost": str(p.cost),
                "formatted_cost": p.formatted_cost,
                "available": p.vendor == "mock" or bool(settings.system_key(p.vendor)),
                "aliases": sorted(p.aliases),
            }
            for p in self._providers.values()
        ]


def build_registry(settings: Settings) -> ProviderRegistry:
    providers = []
    for p in PROVIDERS:
        if p.id == "openai-gpt5" and settings.openai_gpt5_model:
            p = replace(p, model=settings.openai_gpt5_model)
        providers.append(p)
    registry = ProviderRegistry(providers, LEGACY_ALIASES)
    # configured chain must only name known providers
    for provider_id in [settings.default_provider, *settings.fallback_chain]:
        try:
            registry.resolve(provider_id)
        except UnknownProviderError as e:
            raise RegistryConfigError(f"Configured provider '{provider_id}' is not registered") from e
    return registry


@lru_cache
def get_registry() -> ProviderRegistry:
    return build_registry(get_settings())
