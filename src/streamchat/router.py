"""Model-id to provider routing and provider client construction."""

from __future__ import annotations

from collections.abc import Callable, Mapping

from .clients import ModelClient, create_provider_client
from .config import ProvidersConfig
from .exceptions import ConfigurationError
from .models import AVAILABLE_MODELS, PROVIDERS, ModelInfo, get_model, get_recommended_model

# credential -> client bound to that credential
ClientFactory = Callable[[str | None], ModelClient]


def default_client_factories(
    providers: ProvidersConfig | None = None,
) -> dict[str, ClientFactory]:
    """Build one OpenAI-compatible client factory per configured provider."""
    settings = providers or ProvidersConfig()
    factories: dict[str, ClientFactory] = {}
    for tag in PROVIDERS:
        provider_config = settings.get(tag)
        if provider_config is None:
            continue

        def _factory(
            credential: str | None,
            _tag: str = tag,
            _base_url: str = provider_config.base_url,
            _timeout: float = float(provider_config.timeout),
        ) -> ModelClient:
            return create_provider_client(_tag, credential, _base_url, _timeout)

        factories[tag] = _factory
    return factories


class ModelRouter:
    """Pure lookup from model id to provider, plus client construction.

    Nothing here performs I/O: building a client only binds the credential,
    the network is touched when the returned model is asked to stream.
    """

    def __init__(
        self,
        factories: Mapping[str, ClientFactory] | None = None,
        catalog: tuple[ModelInfo, ...] = AVAILABLE_MODELS,
        credential_free: frozenset[str] = frozenset(),
    ) -> None:
        self._factories = dict(factories) if factories is not None else default_client_factories()
        self._catalog = catalog
        self._credential_free = credential_free

    @property
    def catalog(self) -> tuple[ModelInfo, ...]:
        return self._catalog

    def get_provider(self, model_id: str) -> str | None:
        info = get_model(model_id, self._catalog)
        return info.provider if info is not None else None

    def get_recommended_model(self) -> ModelInfo:
        return get_recommended_model(self._catalog)

    def requires_credential(self, provider: str) -> bool:
        return provider not in self._credential_free

    def build_client(self, provider: str, credential: str | None = None) -> ModelClient:
        factory = self._factories.get(provider)
        if factory is None:
            raise ConfigurationError(f"Unsupported provider: {provider}")
        return factory(credential)
