import ipaddress
import logging
import typing

import dns.asyncquery
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.resolver

from acmeissuer.dns.exceptions import DNSError, DNSQueryError

logger = logging.getLogger(__name__)

DEFAULT_RESOLV_CONF = "/etc/resolv.conf"
DEFAULT_NAMESERVERS = ["8.8.8.8:53", "8.8.4.4:53"]
"""Used when the system resolver configuration cannot be read."""

DEFAULT_PORT = 53
MAX_CNAME_CHAIN = 50


class Nameserver(typing.NamedTuple):
    host: str
    port: int = DEFAULT_PORT

    def __str__(self):
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class TXTResult(typing.NamedTuple):
    records: typing.List[str]
    """The TXT strings found at the (effective) name, each multi-string record joined."""
    cname_chain: typing.List[str]
    """The CNAME targets that were followed, in order."""


def parse_nameserver(server: str) -> Nameserver:
    """Parses a nameserver given as *host*, *host:port*, *ipv6* or *[ipv6]:port*.

    :param server: The nameserver string.
    :return: The parsed nameserver, defaulting to port 53.
    """
    server = server.strip()

    if server.startswith("["):
        host, _, port = server[1:].partition("]")
        return Nameserver(host, int(port.lstrip(":") or DEFAULT_PORT))

    try:
        ipaddress.ip_address(server)
        return Nameserver(server)
    except ValueError:
        pass

    host, sep, port = server.rpartition(":")
    if sep and port.isdigit():
        return Nameserver(host, int(port))

    return Nameserver(server)


def parse_nameservers(servers: typing.Iterable[str]) -> typing.List[Nameserver]:
    return [parse_nameserver(server) for server in servers]


def system_nameservers(path: str = DEFAULT_RESOLV_CONF) -> typing.List[Nameserver]:
    """Reads the system's recursive nameservers, falling back to :data:`DEFAULT_NAMESERVERS`.

    :param path: The resolv.conf to read.
    """
    try:
        resolver = dns.resolver.Resolver(filename=path)
    except (dns.exception.DNSException, OSError) as e:
        logger.debug("Could not read %s (%s), using default nameservers", path, e)
        return parse_nameservers(DEFAULT_NAMESERVERS)

    if not resolver.nameservers:
        return parse_nameservers(DEFAULT_NAMESERVERS)

    return parse_nameservers(str(ns) for ns in resolver.nameservers)


def fqdn(name: str) -> str:
    """Returns the name in absolute form, i.e. with a trailing dot."""
    return name if name.endswith(".") else f"{name}."


class DNSClient:
    """Sends DNS queries to recursive or authoritative nameservers.

    Queries go out over UDP and are retried over TCP if the response is truncated.
    The client holds no state besides its read-only configuration and can be shared
    between concurrently running tasks.
    """

    DEFAULT_TIMEOUT = 10.0
    """Time in seconds to wait for a single nameserver's response."""

    def __init__(
        self,
        nameservers: typing.Optional[typing.Iterable[str]] = None,
        *,
        timeout: float = None,
        tcp_only: bool = False,
    ):
        """Creates a :class:`DNSClient` instance.

        :param nameservers: The recursive nameservers to use. Defaults to the ones in /etc/resolv.conf.
        :param timeout: The per-query timeout in seconds.
        :param tcp_only: Use TCP for all queries instead of UDP with TCP fallback.
        """
        self.recursive_nameservers: typing.List[Nameserver] = (
            parse_nameservers(nameservers) if nameservers else system_nameservers()
        )
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.tcp_only = tcp_only

    async def exchange(self, msg: dns.message.Message, nameserver: Nameserver) -> dns.message.Message:
        """Sends a single message to a single nameserver.

        :param msg: The query message.
        :param nameserver: The nameserver to query. Hostnames are resolved first.
        :raises: :class:`dns.exception.DNSException` or :class:`OSError` on network failures.
        :return: The response message.
        """
        host = nameserver.host
        try:
            ipaddress.ip_address(host)
        except ValueError:
            host = await self.lookup_address(host)

        if self.tcp_only:
            return await dns.asyncquery.tcp(msg, host, timeout=self.timeout, port=nameserver.port)

        response, used_tcp = await dns.asyncquery.udp_with_fallback(
            msg, host, timeout=self.timeout, port=nameserver.port
        )
        if used_tcp:
            logger.debug("Response from %s was truncated, retried over TCP", nameserver)
        return response

    async def query(
        self,
        qname: str,
        rdtype: typing.Union[str, dns.rdatatype.RdataType],
        nameservers: typing.Optional[typing.Sequence[Nameserver]] = None,
        recursive: bool = True,
    ) -> dns.message.Message:
        """Queries the nameservers in order until one returns an answer.

        :param qname: The name to query.
        :param rdtype: The record type to query.
        :param nameservers: The nameservers to query. Defaults to the recursive nameservers.
        :param recursive: Whether to set the *recursion desired* flag.
        :raises: :class:`DNSQueryError` If no nameserver returned a response.
        :return: The first response with a non-empty answer section, or the last response received.
        """
        msg = dns.message.make_query(fqdn(qname), rdtype, use_edns=0, payload=4096)
        if not recursive:
            msg.flags &= ~dns.flags.RD

        response = None
        errors = []
        for nameserver in nameservers or self.recursive_nameservers:
            try:
                response = await self.exchange(msg, nameserver)
            except (dns.exception.DNSException, OSError) as e:
                logger.debug("DNS call to %s for %s failed: %s", nameserver, qname, e)
                errors.append(DNSError(f"DNS call to {nameserver}: {e!r}"))
                continue

            if response.answer:
                return response

        if response is None:
            raise DNSQueryError(qname, errors)

        return response

    async def lookup_txt(
        self,
        name: str,
        nameservers: typing.Optional[typing.Sequence[Nameserver]] = None,
        recursive: bool = True,
    ) -> TXTResult:
        """Queries the TXT records of a name, following CNAMEs contained in the answer.

        :param name: The name to query.
        :param nameservers: The nameservers to query.
        :param recursive: Whether to set the *recursion desired* flag.
        :raises: :class:`DNSError` If the nameserver answered with an error code other than NXDOMAIN.
        """
        response = await self.query(name, dns.rdatatype.TXT, nameservers, recursive)

        rcode = response.rcode()
        if rcode not in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
            raise DNSError(f"unexpected response code '{dns.rcode.to_text(rcode)}' for {name}")

        current = dns.name.from_text(fqdn(name))
        chain = []
        for _ in range(MAX_CNAME_CHAIN):
            target = _cname_target(response, current)
            if target is None:
                break
            chain.append(target.to_text())
            current = target

        records = []
        for rrset in response.answer:
            if rrset.rdtype != dns.rdatatype.TXT or rrset.name != current:
                continue
            for rdata in rrset:
                records.append(b"".join(rdata.strings).decode())

        return TXTResult(records, chain)

    async def lookup_cname(self, name: str) -> str:
        """Follows the CNAME chain starting at *name* using the recursive nameservers.

        :param name: The name to start at.
        :return: The last name in the chain, or *name* itself if it is not an alias.
        """
        name = fqdn(name)
        for _ in range(MAX_CNAME_CHAIN):
            try:
                response = await self.query(name, dns.rdatatype.CNAME)
            except DNSError:
                break

            target = _cname_target(response, dns.name.from_text(name))
            if target is None or target.to_text() == name:
                break

            logger.debug("Following CNAME %s -> %s", name, target)
            name = target.to_text()

        return name

    async def lookup_address(self, host: str) -> str:
        """Resolves a hostname to an IP address using the recursive nameservers.

        :raises: :class:`DNSError` If the host has neither A nor AAAA records.
        """
        for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            response = await self.query(host, rdtype, self.recursive_nameservers)
            for rrset in response.answer:
                if rrset.rdtype == rdtype:
                    return rrset[0].address

        raise DNSError(f"could not resolve the address of {host}")


def _cname_target(msg: dns.message.Message, name: dns.name.Name) -> typing.Optional[dns.name.Name]:
    for rrset in msg.answer:
        if rrset.rdtype == dns.rdatatype.CNAME and rrset.rdclass == dns.rdataclass.IN and rrset.name == name:
            return rrset[0].target
    return None
