import ipaddress
import logging
import typing

import dns.asyncquery
import dns.message
import dns.name
import dns.rcode
import dns.tsigkeyring
import dns.update
from pydantic_settings import SettingsConfigDict

from acmeissuer.dns.client import parse_nameserver
from acmeissuer.dns.exceptions import DNSError
from acmeissuer.dns.zone import ZoneResolver
from acmeissuer.providers.base import Provider

logger = logging.getLogger(__name__)

"""
This module contains a DNS provider using RFC2136 TSIG updates.

The zone of each record is looked up on the update server itself.
"""


class RFC2136Provider(Provider):
    """Creates and removes the challenge TXT records using RFC 2136 dynamic updates signed with TSIG."""

    class Config(Provider.Config):
        model_config = SettingsConfigDict(env_prefix="RFC2136_")

        type: typing.Literal["rfc2136"] = "rfc2136"
        server: str
        """DNS server to send the updates to, as *host* or *host:port*."""
        keyid: str
        """TSIG key ID."""
        alg: str = "hmac-sha256"
        """TSIG algorithm."""
        secret: str
        """TSIG secret, base64 encoded."""
        timeout: float = 10.0
        """Timeout of a single update in seconds."""

    def __init__(self, cfg: Config, zone_resolver: ZoneResolver):
        super().__init__(cfg, zone_resolver)

        self.server = parse_nameserver(cfg.server)
        self.keyring = dns.tsigkeyring.from_text({cfg.keyid: (cfg.alg, cfg.secret)})
        self.keyname = dns.name.from_text(cfg.keyid)

    async def _run_query(self, msg: dns.message.Message) -> None:
        host = self.server.host
        try:
            ipaddress.ip_address(host)
        except ValueError:
            host = await self.zone_resolver.dns_client.lookup_address(host)

        response = await dns.asyncquery.tcp(msg, host, timeout=self.config.timeout, port=self.server.port)

        if (rcode := response.rcode()) != dns.rcode.NOERROR:
            raise DNSError(f"update rejected by {self.server}: {dns.rcode.to_text(rcode)}")

    async def _update(self, name: str) -> typing.Tuple[dns.name.Name, dns.update.UpdateMessage]:
        zone = await self.zone_resolver.find_zone_by_fqdn(name, nameservers=[self.server])
        origin = dns.name.from_text(zone)
        relative = dns.name.from_text(name).relativize(origin)

        update = dns.update.UpdateMessage(origin, keyring=self.keyring, keyname=self.keyname)
        return relative, update

    async def set_txt_record(self, name: str, text: str, ttl: int = 60) -> None:
        logger.debug("Setting TXT record %s = %s, TTL %d", name, text, ttl)

        relative, update = await self._update(name)
        update.add(relative, ttl, "TXT", f'"{text}"')

        await self._run_query(update)

    async def delete_txt_record(self, name: str, text: str) -> None:
        logger.debug("Deleting TXT record %s = %s", name, text)

        relative, update = await self._update(name)
        update.delete(relative, "TXT", f'"{text}"')

        await self._run_query(update)

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        info = await self.challenge_info(domain, key_auth)
        await self.set_txt_record(info.effective_fqdn, info.value, self.config.ttl)

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        info = await self.challenge_info(domain, key_auth)
        await self.delete_txt_record(info.effective_fqdn, info.value)
