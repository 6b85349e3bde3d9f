from typing import Dict, Iterable, Optional

from escrow.core.errors import ValidationError
from escrow.providers.base import ProviderAdapter


class ProviderRegistry:
    """Name -> adapter lookup; the only way the core reaches a provider."""

    def __init__(self, adapters: Iterable[ProviderAdapter], default: Optional[str] = None):
        self._adapters: Dict[str, ProviderAdapter] = {a.name: a for a in adapters}
        self.default = (default or "").lower() or next(iter(self._adapters), "")

    def get(self, name: Optional[str] = None) -> ProviderAdapter:
        key = (name or self.default or "").strip().lower()
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ValidationError(f"Unsupported payment provider: {name!r}", provider=name)
        return adapter

    def names(self):
        return sorted(self._adapters)

    def __contains__(self, name) -> bool:
        return (name or "").lower() in self._adapters
