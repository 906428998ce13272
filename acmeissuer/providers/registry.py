import logging
import typing

from acmeissuer.providers.base import Provider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps provider names to provider classes.

    A registry is an ordinary object that is built once at start-up and handed to whatever
    needs to look up providers, there is no process-wide registration state.
    """

    def __init__(self):
        self._providers: typing.Dict[str, typing.Type[Provider]] = dict()

    def register(self, provider_cls: typing.Type[Provider], name: str = None) -> typing.Type[Provider]:
        """Registers a provider class.

        :param provider_cls: The provider class.
        :param name: The name used to refer to the provider in config files.
            Defaults to the default value of the *type* field of the provider's config class.
        :raises: :class:`ValueError` If the name is already taken by another class.
        :return: The registered provider class.
        """
        if name is None:
            name = provider_cls.Config.model_fields["type"].default

        if not isinstance(name, str) or not name:
            raise ValueError(f"{provider_cls.__name__} does not declare a provider name")

        if (existing := self._providers.get(name)) is not None and existing is not provider_cls:
            raise ValueError(f"The provider name {name} is already taken by {existing.__name__}")

        logger.debug("Registering provider %s as %s", provider_cls.__name__, name)
        self._providers[name] = provider_cls
        return provider_cls

    def config_mapping(self) -> typing.Dict[str, typing.Type[Provider]]:
        """Maps provider config names to the provider classes.

        :return: Mapping from config names to the provider classes.
        """
        return dict(self._providers)

    def get_plugin(self, name: str) -> typing.Type[Provider]:
        """Queries the registry for a provider by config name.

        :param name: The provider's config name.
        :raises: :class:`ValueError` If no provider is registered by the given name.
        :return: The provider class.
        """
        if name not in (names := self._providers.keys()):
            raise ValueError(f"The provider {name} has not been registered. Valid options: {', '.join(sorted(names))}.")

        return self._providers[name]

    def create(self, cfg: typing.Union[Provider.Config, typing.Dict[str, typing.Any]], **deps) -> Provider:
        """Instantiates the provider a config belongs to.

        :param cfg: The provider config, either validated or as a mapping containing a *type* key.
        :param deps: Further constructor arguments, e.g. the zone resolver.
        :return: The provider instance.
        """
        name = cfg["type"] if isinstance(cfg, dict) else cfg.type
        provider_cls = self.get_plugin(name)

        if isinstance(cfg, dict):
            cfg = provider_cls.Config(**cfg)

        return provider_cls(cfg, **deps)

    def __contains__(self, name):
        return name in self._providers

    def __iter__(self):
        return iter(sorted(self._providers))


def default_registry() -> ProviderRegistry:
    """Builds a registry containing the bundled providers."""
    from acmeissuer.providers.cloudflare import CloudflareProvider
    from acmeissuer.providers.lexicon import LexiconProvider
    from acmeissuer.providers.rfc2136 import RFC2136Provider

    registry = ProviderRegistry()
    for provider_cls in (RFC2136Provider, CloudflareProvider, LexiconProvider):
        registry.register(provider_cls)

    return registry
