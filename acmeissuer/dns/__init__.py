from .client import DNSClient, Nameserver, parse_nameservers
from .exceptions import DNSError, DNSQueryError, ZoneNotFound, PropagationTimeout
from .propagation import PropagationChecker, DEFAULT_PROPAGATION_TIMEOUT, DEFAULT_POLLING_INTERVAL
from .zone import Zone, ZoneCache, ZoneResolver

__all__ = [
    "DNSClient",
    "Nameserver",
    "parse_nameservers",
    "DNSError",
    "DNSQueryError",
    "ZoneNotFound",
    "PropagationTimeout",
    "PropagationChecker",
    "DEFAULT_PROPAGATION_TIMEOUT",
    "DEFAULT_POLLING_INTERVAL",
    "Zone",
    "ZoneCache",
    "ZoneResolver",
]
