import logging
import threading
import typing

import cachetools
import dns.name
import dns.rcode
import dns.rdatatype
from publicsuffixlist import PublicSuffixList

from acmeissuer.dns.client import DNSClient, Nameserver, fqdn as to_fqdn
from acmeissuer.dns.exceptions import DNSError, ZoneNotFound

logger = logging.getLogger(__name__)

MAX_LABELS = 127
"""Upper bound on the number of labels of a valid domain name."""

_public_suffixes = None


def public_suffix(fqdn: str) -> dns.name.Name:
    """Returns the public suffix of *fqdn*, e.g. `co.uk.` for `www.example.co.uk.`

    Names under an unlisted TLD have that TLD as their public suffix.
    """
    global _public_suffixes
    if _public_suffixes is None:
        _public_suffixes = PublicSuffixList()

    suffix = _public_suffixes.publicsuffix(fqdn.rstrip("."))
    if suffix is None:
        name = dns.name.from_text(fqdn)
        return name.split(min(2, len(name.labels)))[1]
    return dns.name.from_text(suffix)


class Zone(typing.NamedTuple):
    name: str
    """The zone apex, in absolute form."""
    primary_ns: str
    """The primary nameserver taken from the SOA record."""
    refresh: int
    """The SOA refresh interval in seconds."""


class ZoneCache:
    """FQDN to zone mapping that expires each entry after the zone's SOA refresh interval.

    Safe for use from multiple tasks and threads.
    """

    def __init__(self, maxsize: int = 1024):
        self._cache = cachetools.TLRUCache(maxsize=maxsize, ttu=lambda _key, zone, now: now + zone.refresh)
        self._lock = threading.Lock()

    def get(self, fqdn: str) -> typing.Optional[Zone]:
        with self._lock:
            return self._cache.get(fqdn)

    def set(self, fqdn: str, zone: Zone) -> None:
        with self._lock:
            self._cache[fqdn] = zone

    def clear(self) -> None:
        """Invalidates all cached mappings."""
        with self._lock:
            self._cache.clear()

    def __len__(self):
        with self._lock:
            return len(self._cache)


class ZoneResolver:
    """Determines the zone apex of a domain name.

    Starting at the full name, the resolver strips one label at a time and queries
    the SOA record of each candidate until a nameserver answers with a start of authority.
    """

    def __init__(self, dns_client: DNSClient, cache: typing.Optional[ZoneCache] = None):
        """Creates a :class:`ZoneResolver` instance.

        :param dns_client: The client used to query the nameservers.
        :param cache: Optional cache for the discovered zones. Zones are looked up on every call if omitted.
        """
        self._dns = dns_client
        self._cache = cache

    @property
    def dns_client(self) -> DNSClient:
        return self._dns

    async def find_zone_by_fqdn(self, fqdn: str, nameservers: typing.Sequence[Nameserver] = None) -> str:
        """Determines the zone apex for the given FQDN.

        :param fqdn: The fully qualified domain name.
        :param nameservers: Nameservers to query instead of the recursive ones, e.g. an authoritative server.
        :raises: :class:`ZoneNotFound` If no candidate name returned an SOA record.
        :return: The zone apex in absolute form.
        """
        return (await self.find_zone(fqdn, nameservers)).name

    async def find_primary_ns(self, fqdn: str, nameservers: typing.Sequence[Nameserver] = None) -> str:
        """Determines the primary nameserver of the zone apex for the given FQDN."""
        return (await self.find_zone(fqdn, nameservers)).primary_ns

    async def find_zone(self, fqdn: str, nameservers: typing.Sequence[Nameserver] = None) -> Zone:
        fqdn = to_fqdn(fqdn.lower())

        if self._cache is not None and (zone := self._cache.get(fqdn)):
            return zone

        zone = await self._fetch_zone(fqdn, nameservers)

        if self._cache is not None:
            self._cache.set(fqdn, zone)

        return zone

    async def lookup_nameservers(self, fqdn: str) -> typing.List[str]:
        """Returns the authoritative nameservers of the zone that contains the given FQDN.

        :raises: :class:`DNSError` If the zone or its nameservers could not be determined.
        """
        zone = await self.find_zone_by_fqdn(fqdn)

        response = await self._dns.query(zone, dns.rdatatype.NS)
        nameservers = [
            rdata.target.to_text().lower()
            for rrset in response.answer
            if rrset.rdtype == dns.rdatatype.NS
            for rdata in rrset
        ]

        if not nameservers:
            raise DNSError(f"[zone={zone}] could not determine authoritative nameservers")

        return nameservers

    async def _fetch_zone(self, fqdn: str, nameservers: typing.Optional[typing.Sequence[Nameserver]]) -> Zone:
        name = dns.name.from_text(fqdn)
        if len(name.labels) > MAX_LABELS + 1:
            raise ZoneNotFound(fqdn, DNSError(f"too many labels ({len(name.labels) - 1})"))

        # Registrants cannot own a zone at or above a public suffix.
        suffix = public_suffix(fqdn)
        last_error = None
        while name != suffix and name.is_subdomain(suffix):
            candidate = name.to_text()
            name = name.parent()

            try:
                response = await self._dns.query(candidate, dns.rdatatype.SOA, nameservers)
            except DNSError as e:
                last_error = e
                continue

            rcode = response.rcode()
            if rcode == dns.rcode.NXDOMAIN:
                continue
            if rcode != dns.rcode.NOERROR:
                raise DNSError(f"unexpected response code '{dns.rcode.to_text(rcode)}' for {candidate}")

            # A CNAME cannot exist at the zone apex.
            if any(rrset.rdtype == dns.rdatatype.CNAME for rrset in response.answer):
                continue

            for rrset in response.answer:
                if rrset.rdtype == dns.rdatatype.SOA:
                    soa = rrset[0]
                    logger.debug("Zone of %s is %s", fqdn, rrset.name)
                    return Zone(rrset.name.to_text().lower(), soa.mname.to_text().lower(), soa.refresh)

        raise ZoneNotFound(fqdn, last_error)
