import asyncio
import functools
import logging
import typing

import lexicon.client
from lexicon.config import ConfigResolver, DictConfigSource
from pydantic_settings import SettingsConfigDict

from acmeissuer.dns.zone import ZoneResolver
from acmeissuer.providers.base import Provider

logger = logging.getLogger(__name__)

"""This module contains a DNS provider based on the lexicon library.

Lexicon is synchronous, its calls are run in the event loop's default executor.
"""


class LexiconProvider(Provider):
    """Creates and removes the challenge TXT records through any of the DNS hosts supported by lexicon."""

    class Config(Provider.Config):
        model_config = SettingsConfigDict(env_prefix="LEXICON_")

        type: typing.Literal["lexicon"] = "lexicon"
        provider_name: str
        """lexicon provider name"""
        provider_options: typing.Dict[str, typing.Any] = {}
        """lexicon provider options, e.g. credentials"""

    def __init__(self, cfg: Config, zone_resolver: ZoneResolver):
        super().__init__(cfg, zone_resolver)

        self.provider_name = cfg.provider_name
        self.lexicon_config: typing.Dict[str, typing.Any] = {
            "provider_name": cfg.provider_name,
            cfg.provider_name: dict(cfg.provider_options),
        }

    async def _config_for(self, name: str) -> ConfigResolver:
        zone = await self.zone_resolver.find_zone_by_fqdn(name)
        cfg = ConfigResolver().with_dict(self.lexicon_config)
        cfg.add_config_source(DictConfigSource({"domain": zone.rstrip("."), "ttl": self.config.ttl}), 0)
        return cfg

    def _run(self, cfg: ConfigResolver, action: str, name: str, text: str) -> None:
        with lexicon.client.Client(cfg) as ops:
            getattr(ops, action)(rtype="TXT", name=name, content=text)

    async def _execute(self, action: str, name: str, text: str) -> None:
        cfg = await self._config_for(name)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(self._run, cfg, action, name.rstrip("."), text))

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        info = await self.challenge_info(domain, key_auth)
        logger.debug("Setting TXT record %s = %s via %s", info.effective_fqdn, info.value, self.provider_name)
        await self._execute("create_record", info.effective_fqdn, info.value)

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        info = await self.challenge_info(domain, key_auth)
        logger.debug("Deleting TXT record %s = %s via %s", info.effective_fqdn, info.value, self.provider_name)
        await self._execute("delete_record", info.effective_fqdn, info.value)
