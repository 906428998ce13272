import pytest

from acmeissuer.dns import DNSError, ZoneCache, ZoneNotFound, ZoneResolver
from acmeissuer.dns.client import parse_nameserver, Nameserver
from acmeissuer.dns.zone import public_suffix


@pytest.mark.parametrize(
    "fqdn",
    [
        "example.com.",
        "www.example.com.",
        "_acme-challenge.www.example.com.",
        "_acme-challenge.a.b.c.d.example.com",
    ],
)
@pytest.mark.asyncio
async def test_find_zone_by_fqdn(zone_resolver, fqdn):
    assert await zone_resolver.find_zone_by_fqdn(fqdn) == "example.com."


@pytest.mark.asyncio
async def test_find_zone_longest_match(dns_stub, zone_resolver):
    dns_stub.add_zone("sub.example.com", ["ns.sub.example.com."])

    assert await zone_resolver.find_zone_by_fqdn("_acme-challenge.sub.example.com.") == "sub.example.com."
    assert await zone_resolver.find_zone_by_fqdn("_acme-challenge.other.example.com.") == "example.com."
    assert await zone_resolver.find_primary_ns("www.sub.example.com.") == "ns.sub.example.com."


@pytest.mark.asyncio
async def test_find_zone_case_insensitive(zone_resolver):
    assert await zone_resolver.find_zone_by_fqdn("WWW.Example.COM") == "example.com."


@pytest.mark.asyncio
async def test_find_zone_skips_cname(dns_stub, zone_resolver):
    dns_stub.add_cname("alias.example.com", "target.example.org")

    assert await zone_resolver.find_zone_by_fqdn("alias.example.com.") == "example.com."


@pytest.mark.asyncio
async def test_find_zone_stops_at_tld(dns_stub, zone_resolver):
    with pytest.raises(ZoneNotFound) as e:
        await zone_resolver.find_zone_by_fqdn("www.unknown.test.")

    assert e.value.fqdn == "www.unknown.test."

    soa_queries = [q[0] for q in dns_stub.queries_for("SOA")]
    assert soa_queries == ["www.unknown.test.", "unknown.test."]


@pytest.mark.asyncio
async def test_find_zone_stops_at_public_suffix(dns_stub, zone_resolver):
    dns_stub.add_zone("co.uk")

    with pytest.raises(ZoneNotFound):
        await zone_resolver.find_zone_by_fqdn("_acme-challenge.foo.co.uk.")

    soa_queries = [q[0] for q in dns_stub.queries_for("SOA")]
    assert soa_queries == ["_acme-challenge.foo.co.uk.", "foo.co.uk."]

    dns_stub.add_zone("foo.co.uk")
    assert await zone_resolver.find_zone_by_fqdn("_acme-challenge.foo.co.uk.") == "foo.co.uk."


@pytest.mark.parametrize(
    "fqdn, expected",
    [
        ("www.example.com.", "com."),
        ("_acme-challenge.foo.co.uk.", "co.uk."),
        ("www.unknown.test.", "test."),
        ("co.uk.", "co.uk."),
    ],
)
def test_public_suffix(fqdn, expected):
    assert public_suffix(fqdn).to_text() == expected


@pytest.mark.asyncio
async def test_find_zone_unreachable(dns_stub, zone_resolver):
    dns_stub.unreachable.add("10.0.0.53")

    with pytest.raises(ZoneNotFound) as e:
        await zone_resolver.find_zone_by_fqdn("www.example.com.")

    assert isinstance(e.value.cause, DNSError)


@pytest.mark.asyncio
async def test_find_zone_cache(dns_stub, dns_client):
    cache = ZoneCache()
    resolver = ZoneResolver(dns_client, cache)

    assert await resolver.find_zone_by_fqdn("_acme-challenge.example.com.") == "example.com."
    queries = len(dns_stub.queries)

    assert await resolver.find_zone_by_fqdn("_acme-challenge.example.com.") == "example.com."
    assert len(dns_stub.queries) == queries
    assert len(cache) == 1

    cache.clear()
    assert await resolver.find_zone_by_fqdn("_acme-challenge.example.com.") == "example.com."
    assert len(dns_stub.queries) > queries


@pytest.mark.asyncio
async def test_find_zone_without_cache(dns_stub, zone_resolver):
    await zone_resolver.find_zone_by_fqdn("example.com.")
    queries = len(dns_stub.queries)

    await zone_resolver.find_zone_by_fqdn("example.com.")
    assert len(dns_stub.queries) == 2 * queries


@pytest.mark.asyncio
async def test_lookup_nameservers(zone_resolver):
    nameservers = await zone_resolver.lookup_nameservers("_acme-challenge.www.example.org.")
    assert sorted(nameservers) == ["ns1.example.org.", "ns2.example.org."]


@pytest.mark.asyncio
async def test_lookup_cname_chain(dns_stub, dns_client):
    dns_stub.add_cname("_acme-challenge.example.com", "_acme-challenge.alias.example.com")
    dns_stub.add_cname("_acme-challenge.alias.example.com", "challenges.example.org")

    assert await dns_client.lookup_cname("_acme-challenge.example.com") == "challenges.example.org."
    assert await dns_client.lookup_cname("www.example.com") == "www.example.com."


@pytest.mark.asyncio
async def test_lookup_txt_follows_cname(dns_stub, dns_client):
    dns_stub.add_cname("_acme-challenge.example.com", "challenges.example.org")
    dns_stub.add_txt("challenges.example.org", "value")

    result = await dns_client.lookup_txt("_acme-challenge.example.com")
    assert result.records == ["value"]
    assert result.cname_chain == ["challenges.example.org."]


@pytest.mark.parametrize(
    "server, expected",
    [
        ("127.0.0.1", Nameserver("127.0.0.1", 53)),
        ("127.0.0.1:5353", Nameserver("127.0.0.1", 5353)),
        ("ns1.example.com", Nameserver("ns1.example.com", 53)),
        ("ns1.example.com:5353", Nameserver("ns1.example.com", 5353)),
        ("2001:db8::1", Nameserver("2001:db8::1", 53)),
        ("[2001:db8::1]:5353", Nameserver("2001:db8::1", 5353)),
    ],
)
def test_parse_nameserver(server, expected):
    assert parse_nameserver(server) == expected
