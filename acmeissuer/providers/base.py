import abc
import asyncio
import base64
import dataclasses
import hashlib
import logging
import typing

from pydantic_settings import BaseSettings, SettingsConfigDict

from acmeissuer.dns.propagation import DEFAULT_POLLING_INTERVAL, DEFAULT_PROPAGATION_TIMEOUT
from acmeissuer.dns.zone import ZoneResolver

logger = logging.getLogger(__name__)

DEFAULT_TTL = 120


@dataclasses.dataclass(frozen=True)
class TimeoutPolicy:
    """Overrides the propagation timeout and polling interval for a provider's records."""

    timeout: float
    """Time in seconds after which an unpropagated record is considered failed."""
    interval: float
    """Time in seconds between propagation checks."""


@dataclasses.dataclass(frozen=True)
class SequentialPolicy:
    """Requests that the provider's challenges are solved one at a time."""

    interval: float
    """Minimum time in seconds between the starts of two consecutive challenges."""


@dataclasses.dataclass(frozen=True)
class Capabilities:
    """The optional capabilities of a provider. An unset field means the capability is absent."""

    timeout: typing.Optional[TimeoutPolicy] = None
    sequential: typing.Optional[SequentialPolicy] = None


@dataclasses.dataclass(frozen=True)
class ChallengeInfo:
    """The information needed to create the TXT record for a *dns-01* challenge."""

    fqdn: str
    """The challenge name, i.e. *_acme-challenge.<domain>.*"""
    effective_fqdn: str
    """The challenge name after following CNAMEs. Equal to :attr:`fqdn` if it is not an alias."""
    value: str
    """The TXT record value."""


def challenge_fqdn(domain: str) -> str:
    """Returns the name of the TXT record for the given domain. Wildcard labels are removed."""
    if domain.startswith("*."):
        domain = domain[2:]
    return f"_acme-challenge.{domain.rstrip('.')}."


def challenge_value(key_auth: str) -> str:
    """Returns the TXT record value for a key authorization: base64url encoded SHA-256, without padding."""
    digest = hashlib.sha256(key_auth.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


class Provider(abc.ABC):
    """An abstract base class for DNS provider integrations.

    A provider creates and removes the TXT records of *dns-01* challenges at one specific DNS host.
    Implementations must implement :meth:`present` and :meth:`cleanup` and must tolerate concurrent calls
    for different tokens, including tokens of the same domain (a wildcard and its base domain share
    a record name).
    """

    class Config(BaseSettings):
        model_config = SettingsConfigDict(extra="forbid")

        type: str
        """The provider name the config belongs to."""
        ttl: int = DEFAULT_TTL
        """TTL of the created TXT records in seconds."""
        propagation_timeout: typing.Optional[float] = None
        """Overrides the default propagation timeout."""
        polling_interval: typing.Optional[float] = None
        """Overrides the default propagation polling interval."""
        sequence_interval: typing.Optional[float] = None
        """If set, the provider's challenges are solved one at a time, this many seconds apart."""
        follow_cname: bool = True
        """Whether to create the record at the target of a CNAME found at the challenge name."""

    def __init__(self, cfg: Config, zone_resolver: ZoneResolver):
        self.config = cfg
        self.zone_resolver = zone_resolver
        self.capabilities = self._capabilities(cfg)

    @property
    def name(self) -> str:
        return self.config.type

    @staticmethod
    def _capabilities(cfg: Config) -> Capabilities:
        timeout = None
        if cfg.propagation_timeout is not None or cfg.polling_interval is not None:
            timeout = TimeoutPolicy(
                timeout=cfg.propagation_timeout if cfg.propagation_timeout is not None else DEFAULT_PROPAGATION_TIMEOUT,
                interval=cfg.polling_interval if cfg.polling_interval is not None else DEFAULT_POLLING_INTERVAL,
            )

        sequential = SequentialPolicy(cfg.sequence_interval) if cfg.sequence_interval is not None else None

        return Capabilities(timeout=timeout, sequential=sequential)

    async def challenge_info(self, domain: str, key_auth: str) -> ChallengeInfo:
        """Computes the record name and value, following CNAMEs of the challenge name."""
        name = challenge_fqdn(domain)
        effective = name
        if self.config.follow_cname:
            effective = await self.zone_resolver.dns_client.lookup_cname(name)
        return ChallengeInfo(fqdn=name, effective_fqdn=effective, value=challenge_value(key_auth))

    @abc.abstractmethod
    async def present(self, domain: str, token: str, key_auth: str) -> None:
        """Creates the TXT record that fulfills the challenge.

        :param domain: The domain of the authorization, including the wildcard label of wildcard authorizations.
        :param token: The challenge token.
        :param key_auth: The key authorization of the challenge.
        """
        pass

    @abc.abstractmethod
    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        """Removes the TXT record created by :meth:`present` for the same token.

        This method should not assume that :meth:`present` succeeded and must not
        remove records belonging to other tokens.
        """
        pass

    async def close(self) -> None:
        """Releases the provider's resources, e.g. HTTP sessions."""
        pass


class RecordRegistry:
    """Maps challenge tokens to the provider-specific handles of the records created for them.

    Entries are keyed by token rather than domain because the challenges of a wildcard and its base
    domain coexist at the same name with different values.
    """

    def __init__(self):
        self._handles: typing.Dict[str, typing.Any] = dict()
        self._lock = asyncio.Lock()

    async def add(self, token: str, handle: typing.Any) -> None:
        async with self._lock:
            self._handles[token] = handle

    async def get(self, token: str) -> typing.Any:
        async with self._lock:
            return self._handles.get(token)

    async def discard(self, token: str) -> None:
        async with self._lock:
            self._handles.pop(token, None)

    def __len__(self):
        return len(self._handles)
