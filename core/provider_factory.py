from __future__ import annotations

import importlib
from typing import Optional

from base_classes import CompletionProvider


class ProviderFactory:
    """
    Provider construction helpers.

    Providers live in providers/<lower>_provider.py and are named
    '<ProviderName>Provider'. A config section may set 'alias' to reuse
    another provider's implementation under a different section name.
    """

    @staticmethod
    def load_provider_class(provider_name: str, config=None) -> type:
        actual = provider_name
        if config is not None:
            alias = config.get_provider_config(provider_name).get('alias')
            if alias:
                actual = str(alias)
        module_name = f"providers.{actual.lower()}_provider"
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError as e:
            raise RuntimeError(f"Provider '{provider_name}' not found ({module_name})") from e

        class_name = f"{actual}Provider"
        cls = getattr(module, class_name, None)
        if isinstance(cls, type) and issubclass(cls, CompletionProvider):
            return cls
        for attr in vars(module).values():
            if (isinstance(attr, type) and issubclass(attr, CompletionProvider)
                    and attr is not CompletionProvider and attr.__module__ == module.__name__):
                return attr
        raise RuntimeError(f"Provider module {module_name} defines no CompletionProvider")

    @staticmethod
    def instantiate_by_name(provider_name: str, config) -> CompletionProvider:
        cls = ProviderFactory.load_provider_class(provider_name, config)
        return cls(config)

    @staticmethod
    def for_model(config, model: Optional[str] = None) -> CompletionProvider:
        """Build the provider that serves the given (or default) model."""
        model = model or config.overrides.get('model') or config.default_model()
        provider_name = config.get_provider_for_model(model) if model else None
        if not provider_name:
            raise RuntimeError(f"No provider configured for model '{model}'")
        return ProviderFactory.instantiate_by_name(provider_name, config)
