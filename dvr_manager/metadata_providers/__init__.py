"""Metadata provider plugin system - base classes and registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from threading import Event
from typing import Any, Callable, Dict, List, Optional, Type

from dvr_manager.core.models import MediaIdentity


@dataclass(frozen=True)
class LookupQuery:
    """What the resolver knows about a recording before asking a provider."""
    filename: str
    show: str                           # Best guess at the show name
    season: Optional[int] = None
    episode: Optional[int] = None
    air_date: Optional[date] = None


class MetadataProvider(ABC):
    """Interface for show/episode identification services.

    Implementations return candidate identities with a confidence in [0, 1].
    Transport failures (timeouts, 5xx, rate limiting) must raise
    MetadataServiceError so the caller can retry later; "no match" is an
    empty list.

    Attributes:
        name: Internal identifier (e.g., "tvmaze")
        display_name: Human-readable name (e.g., "TVmaze")
    """
    name: str
    display_name: str

    @abstractmethod
    def identify(self, query: LookupQuery, cancel_flag: Optional[Event] = None) -> List[MediaIdentity]:
        """Return candidate identities for the query, best first."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and available."""
        pass


# Provider registry
_PROVIDERS: Dict[str, Type[MetadataProvider]] = {}
_PROVIDER_KWARGS_FACTORIES: Dict[str, Callable[[Any], Dict[str, Any]]] = {}


def register_provider(name: str):
    """Decorator to register a metadata provider."""
    def decorator(cls):
        _PROVIDERS[name] = cls
        return cls
    return decorator


def register_provider_kwargs(name: str):
    """Decorator to register a provider's kwargs factory.

    The decorated function receives the active Config and returns the kwargs
    for the provider constructor.

    Example:
        @register_provider_kwargs("tvmaze")
        def _tvmaze_kwargs(config) -> Dict:
            return {"timeout": config.get("METADATA_TIMEOUT", 15)}
    """
    def decorator(fn):
        _PROVIDER_KWARGS_FACTORIES[name] = fn
        return fn
    return decorator


def get_provider(name: str, **kwargs) -> MetadataProvider:
    """Factory - instantiate any registered provider."""
    if name not in _PROVIDERS:
        raise ValueError(f"Unknown metadata provider: {name}")
    return _PROVIDERS[name](**kwargs)


def get_provider_kwargs(provider_name: str, config) -> Dict:
    """Get provider-specific initialization kwargs from registered factory."""
    factory = _PROVIDER_KWARGS_FACTORIES.get(provider_name)
    if factory:
        return factory(config)
    return {}


def is_provider_registered(provider_name: str) -> bool:
    return provider_name in _PROVIDERS


def get_configured_provider(config) -> Optional[MetadataProvider]:
    """Instantiate the provider selected by METADATA_PROVIDER, if any."""
    provider_name = config.get("METADATA_PROVIDER", "")
    if not provider_name or not is_provider_registered(provider_name):
        return None

    provider = get_provider(provider_name, **get_provider_kwargs(provider_name, config))
    if not provider.is_available():
        return None
    return provider


# Import provider implementations to trigger registration
# These must be imported AFTER the base classes and registry are defined
from dvr_manager.metadata_providers import tvmaze  # noqa: F401, E402
