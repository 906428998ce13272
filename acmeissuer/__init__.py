from .client import AcmeClient, OrderOrchestrator
from .providers import ProviderRegistry, default_registry
from .version import __version__

__all__ = ["AcmeClient", "OrderOrchestrator", "ProviderRegistry", "default_registry"]
__version__ = __version__
