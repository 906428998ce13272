class DNSError(Exception):
    """General DNS exception."""

    pass


class DNSQueryError(DNSError):
    """Exception that is raised if none of the queried nameservers returned a response."""

    def __init__(self, qname: str, errors: list, *args):
        super().__init__(*args)
        self.qname = qname
        self.errors = errors
        """The errors raised by each nameserver, in query order."""

    def __str__(self):
        return f"DNS query for {self.qname} failed: " + "; ".join(str(e) for e in self.errors)


class ZoneNotFound(DNSError):
    """Exception that is raised if the zone apex of a name could not be determined."""

    def __init__(self, fqdn: str, cause: Exception = None):
        super().__init__(fqdn, cause)
        self.fqdn = fqdn
        self.cause = cause

    def __str__(self):
        msg = f"could not find the start of authority for {self.fqdn}"
        if self.cause:
            return f"{msg}: {self.cause}"
        return msg


class PropagationTimeout(DNSError):
    """Exception that is raised if a TXT record did not become visible in time."""

    def __init__(self, fqdn: str, value: str, timeout: float, last_error: Exception = None):
        super().__init__(fqdn, value, timeout)
        self.fqdn = fqdn
        self.value = value
        self.timeout = timeout
        self.last_error = last_error

    def __str__(self):
        msg = f"TXT record {self.fqdn} = {self.value} not propagated after {self.timeout:g}s"
        if self.last_error:
            return f"{msg}: {self.last_error}"
        return msg
