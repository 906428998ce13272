import logging
import typing

import aiohttp
import asyncache
import cachetools
import yarl
from pydantic_settings import SettingsConfigDict

from acmeissuer.dns.zone import ZoneResolver
from acmeissuer.providers.base import Provider, RecordRegistry

logger = logging.getLogger(__name__)

"""This module contains a DNS provider for the Cloudflare API (v4)."""

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4/"


class CloudflareAPIError(Exception):
    """Raised when the Cloudflare API reports a failure."""

    def __init__(self, status: int, errors: typing.List[typing.Dict[str, typing.Any]]):
        self.status = status
        self.errors = errors

    def __str__(self):
        messages = "; ".join(f"{e.get('code')}: {e.get('message')}" for e in self.errors) or "no details"
        return f"Cloudflare API error (HTTP {self.status}): {messages}"


class CloudflareProvider(Provider):
    """Creates and removes the challenge TXT records through the Cloudflare API.

    Authenticates either with a scoped API token (preferred) or with the account's e-mail and global API key.
    The IDs of the created records are remembered per challenge token so that cleanup removes exactly
    the record created for that token.
    """

    class Config(Provider.Config):
        model_config = SettingsConfigDict(env_prefix="CLOUDFLARE_")

        type: typing.Literal["cloudflare"] = "cloudflare"
        api_token: typing.Optional[str] = None
        """API token with *Zone:Read* and *DNS:Edit* permissions."""
        email: typing.Optional[str] = None
        """Account e-mail, used together with :attr:`api_key`."""
        api_key: typing.Optional[str] = None
        """Global API key, used together with :attr:`email`."""
        zone_token: typing.Optional[str] = None
        """Separate token used for zone lookups, defaults to :attr:`api_token`."""
        base_url: str = CLOUDFLARE_API
        http_timeout: float = 30.0

    def __init__(self, cfg: Config, zone_resolver: ZoneResolver):
        super().__init__(cfg, zone_resolver)

        if not cfg.api_token and not (cfg.email and cfg.api_key):
            raise ValueError("Cloudflare credentials missing: set either api_token or email and api_key")

        self._base_url = yarl.URL(cfg.base_url)
        self._session: typing.Optional[aiohttp.ClientSession] = None
        self._records = RecordRegistry()

    def _headers(self, zone_lookup: bool = False) -> typing.Dict[str, str]:
        if self.config.api_token:
            token = (self.config.zone_token or self.config.api_token) if zone_lookup else self.config.api_token
            return {"Authorization": f"Bearer {token}"}

        return {"X-Auth-Email": self.config.email, "X-Auth-Key": self.config.api_key}

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.config.http_timeout))
        return self._session

    async def _request(self, method: str, path: str, zone_lookup: bool = False, **kwargs) -> typing.Any:
        url = self._base_url / path
        logger.debug("%s %s", method, url)

        async with self.session.request(method, url, headers=self._headers(zone_lookup), **kwargs) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None

            if not isinstance(data, dict):
                raise CloudflareAPIError(resp.status, [{"message": f"unexpected response body from {url}"}])

            if resp.status >= 400 or not data.get("success", False):
                raise CloudflareAPIError(resp.status, data.get("errors") or [])

            return data.get("result")

    @asyncache.cached(
        cache=cachetools.LRUCache(maxsize=32),
        key=lambda self, zone: (str(self._base_url), zone.lower()),
    )
    async def _zone_id(self, zone: str) -> str:
        """Queries the ID of a zone by its name.

        :param zone: The zone name, with or without trailing dot.
        :raises: :class:`ValueError` If the zone does not exist in the account.
        """
        result = await self._request("GET", "zones", zone_lookup=True, params={"name": zone.rstrip(".")})
        if not result:
            raise ValueError(f"Zone {zone} not found in the Cloudflare account")

        return result[0]["id"]

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        info = await self.challenge_info(domain, key_auth)
        zone = await self.zone_resolver.find_zone_by_fqdn(info.effective_fqdn)
        zone_id = await self._zone_id(zone)

        record = {
            "type": "TXT",
            "name": info.effective_fqdn.rstrip("."),
            "content": info.value,
            "ttl": self.config.ttl,
        }
        result = await self._request("POST", f"zones/{zone_id}/dns_records", json=record)

        await self._records.add(token, (zone_id, result["id"]))
        logger.info("Created TXT record %s [id: %s]", info.effective_fqdn, result["id"])

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        handle = await self._records.get(token)
        if handle is None:
            logger.debug("No record known for token %s of %s, nothing to clean up", token, domain)
            return

        zone_id, record_id = handle
        await self._request("DELETE", f"zones/{zone_id}/dns_records/{record_id}")
        await self._records.discard(token)
        logger.info("Deleted TXT record of %s [id: %s]", domain, record_id)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
