import asyncio
import logging
import typing

from acmeissuer.dns.client import DNSClient, Nameserver, fqdn as to_fqdn
from acmeissuer.dns.exceptions import DNSError, PropagationTimeout
from acmeissuer.dns.zone import ZoneResolver

logger = logging.getLogger(__name__)

DEFAULT_PROPAGATION_TIMEOUT = 60.0
"""Time in seconds after which a TXT record that did not show up is considered failed."""

DEFAULT_POLLING_INTERVAL = 2.0
"""Time in seconds between consecutive DNS checks."""


class PropagationChecker:
    """Waits until a TXT record is visible at the nameservers the CA will query.

    By default every authoritative nameserver of the record's zone must serve the expected value.
    Checking the recursive nameservers as well can be enabled with *require_recursive*.
    Alternatively, a fixed *wait* can be configured that is slept before checking, or
    instead of checking if *skip_check* is set.
    """

    def __init__(
        self,
        dns_client: DNSClient,
        zone_resolver: ZoneResolver,
        *,
        require_authoritative: bool = True,
        require_recursive: bool = False,
        wait: float = None,
        skip_check: bool = False,
    ):
        self._dns = dns_client
        self._zones = zone_resolver
        self.require_authoritative = require_authoritative
        self.require_recursive = require_recursive
        self.wait = wait
        self.skip_check = skip_check

    async def wait_for(self, fqdn: str, value: str, timeout: float = None, interval: float = None) -> None:
        """Polls the DNS until *value* is among the TXT records of *fqdn*.

        The first check happens immediately.

        :param fqdn: The name of the TXT record.
        :param value: The expected TXT value.
        :param timeout: Time in seconds after which to give up. Defaults to :data:`DEFAULT_PROPAGATION_TIMEOUT`.
        :param interval: Time in seconds between checks. Defaults to :data:`DEFAULT_POLLING_INTERVAL`.
        :raises: :class:`PropagationTimeout` If the record was not visible before the timeout elapsed.
        """
        timeout = DEFAULT_PROPAGATION_TIMEOUT if timeout is None else timeout
        interval = DEFAULT_POLLING_INTERVAL if interval is None else interval

        if self.wait is not None:
            logger.info("Waiting %.1fs for propagation of %s", self.wait, fqdn)
            await asyncio.sleep(self.wait)
            if self.skip_check:
                return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_error = None

        while True:
            # A single check may not outlast the remaining budget.
            remaining = deadline - loop.time()
            try:
                if await asyncio.wait_for(self.check(fqdn, value), max(remaining, 0)):
                    logger.debug("TXT record %s = %s has propagated", fqdn, value)
                    return
                last_error = None
            except DNSError as e:
                last_error = e
            except asyncio.TimeoutError:
                raise PropagationTimeout(fqdn, value, timeout, last_error)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PropagationTimeout(fqdn, value, timeout, last_error)

            logger.info("Waiting for DNS record propagation of %s (%s)", fqdn, last_error or "not found yet")
            await asyncio.sleep(min(interval, remaining))

    async def check(self, fqdn: str, value: str) -> bool:
        """Checks once whether the expected TXT value is visible.

        :param fqdn: The name of the TXT record.
        :param value: The expected TXT value.
        :raises: :class:`DNSError` If a nameserver could not be queried.
        :return: True if every required nameserver returned the value.
        """
        fqdn = to_fqdn(fqdn)

        # Resolve via the recursive nameservers first to pick up CNAMEs.
        result = await self._dns.lookup_txt(fqdn)
        effective = result.cname_chain[-1] if result.cname_chain else fqdn

        if self.require_recursive:
            if not await self._check_nameservers(effective, value, self._dns.recursive_nameservers, recursive=True):
                return False

        if not self.require_authoritative:
            return self.require_recursive or value in result.records

        authoritative = [Nameserver(ns) for ns in await self._zones.lookup_nameservers(effective)]
        return await self._check_nameservers(effective, value, authoritative, recursive=False)

    async def _check_nameservers(
        self,
        fqdn: str,
        value: str,
        nameservers: typing.Sequence[Nameserver],
        recursive: bool,
    ) -> bool:
        for nameserver in nameservers:
            result = await self._dns.lookup_txt(fqdn, [nameserver], recursive=recursive)
            if value not in result.records:
                logger.debug(
                    "NS %s did not return a matching TXT record [fqdn: %s]: %s",
                    nameserver,
                    fqdn,
                    ", ".join(result.records),
                )
                return False

        return True
