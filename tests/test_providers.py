import typing

import dns.rdatatype
import dns.update
import pytest
import pytest_asyncio
from aiohttp import web

from acmeissuer.providers import ProviderRegistry, RecordRegistry, TimeoutPolicy, challenge_fqdn, challenge_value
from acmeissuer.providers import default_registry
from acmeissuer.providers.cloudflare import CloudflareAPIError, CloudflareProvider
from acmeissuer.providers.lexicon import LexiconProvider
from acmeissuer.providers.rfc2136 import RFC2136Provider
from .dnsstub import StubProvider

KEY_AUTH = "token.thumbprint"


def test_challenge_record():
    assert challenge_fqdn("example.com") == "_acme-challenge.example.com."
    assert challenge_fqdn("*.example.com.") == "_acme-challenge.example.com."
    # base64url(sha256("token.thumbprint")), unpadded
    value = challenge_value(KEY_AUTH)
    assert len(value) == 43
    assert "=" not in value and "+" not in value and "/" not in value


def test_registry():
    registry = ProviderRegistry()
    registry.register(StubProvider)

    assert "stub" in registry
    assert registry.get_plugin("stub") is StubProvider
    assert list(registry) == ["stub"]

    # Registering the same class twice is harmless.
    registry.register(StubProvider)

    class OtherProvider(StubProvider):
        pass

    with pytest.raises(ValueError, match="already taken by StubProvider"):
        registry.register(OtherProvider)

    registry.register(OtherProvider, name="other")
    assert registry.config_mapping() == {"stub": StubProvider, "other": OtherProvider}


def test_registry_unknown_provider():
    with pytest.raises(ValueError, match="Valid options: cloudflare, lexicon, rfc2136"):
        default_registry().get_plugin("route53")


def test_registry_create(zone_resolver, dns_stub):
    registry = ProviderRegistry()
    registry.register(StubProvider)

    provider = registry.create({"type": "stub", "sequence_interval": 1}, zone_resolver=zone_resolver, dns_stub=dns_stub)

    assert isinstance(provider, StubProvider)
    assert provider.dns_stub is dns_stub
    assert provider.capabilities.sequential.interval == 1.0
    assert provider.capabilities.timeout is None


def test_default_registry():
    registry = default_registry()

    assert registry.config_mapping() == {
        "rfc2136": RFC2136Provider,
        "cloudflare": CloudflareProvider,
        "lexicon": LexiconProvider,
    }


def test_timeout_capability(zone_resolver):
    provider = StubProvider(StubProvider.Config(propagation_timeout=300), zone_resolver)

    assert provider.capabilities.timeout == TimeoutPolicy(timeout=300.0, interval=2.0)
    assert provider.capabilities.sequential is None


@pytest.mark.asyncio
async def test_challenge_info_follows_cname(zone_resolver, dns_stub):
    dns_stub.add_cname("_acme-challenge.example.com", "example.com.acme.example.org")
    provider = StubProvider(StubProvider.Config(), zone_resolver, dns_stub)

    info = await provider.challenge_info("*.example.com", KEY_AUTH)

    assert info.fqdn == "_acme-challenge.example.com."
    assert info.effective_fqdn == "example.com.acme.example.org."
    assert info.value == challenge_value(KEY_AUTH)

    provider.config.follow_cname = False
    info = await provider.challenge_info("example.com", KEY_AUTH)
    assert info.effective_fqdn == info.fqdn


@pytest.mark.asyncio
async def test_record_registry():
    records = RecordRegistry()

    await records.add("token-1", "record-1")
    await records.add("token-2", "record-2")
    assert await records.get("token-1") == "record-1"
    assert len(records) == 2

    await records.discard("token-1")
    await records.discard("token-1")
    assert await records.get("token-1") is None
    assert len(records) == 1


class UpdateRecorder(RFC2136Provider):
    """Captures the update messages instead of sending them."""

    def __init__(self, cfg, zone_resolver):
        super().__init__(cfg, zone_resolver)
        self.updates: typing.List[dns.update.UpdateMessage] = []

    async def _run_query(self, msg):
        self.updates.append(msg)


@pytest.fixture
def rfc2136(zone_resolver):
    cfg = RFC2136Provider.Config(
        server="127.0.0.1:5353", keyid="acme-update", alg="hmac-sha256", secret="c2VjcmV0c2VjcmV0", ttl=60
    )
    return UpdateRecorder(cfg, zone_resolver)


@pytest.mark.asyncio
async def test_rfc2136_present_and_cleanup(rfc2136, dns_stub):
    assert rfc2136.server.port == 5353

    await rfc2136.present("www.example.com", "token", KEY_AUTH)
    await rfc2136.cleanup("www.example.com", "token", KEY_AUTH)

    add, delete = rfc2136.updates
    assert add.origin.to_text() == "example.com."
    assert add.keyname.to_text() == "acme-update."

    (rrset,) = add.update
    assert rrset.name.to_text() == "_acme-challenge.www"
    assert rrset.rdtype == dns.rdatatype.TXT
    assert rrset.ttl == 60
    assert [b"".join(rdata.strings).decode() for rdata in rrset] == [challenge_value(KEY_AUTH)]

    # Only the value of this challenge is deleted, not the whole record set.
    (rrset,) = delete.update
    assert [b"".join(rdata.strings).decode() for rdata in rrset] == [challenge_value(KEY_AUTH)]

    # The zone was looked up at the configured server.
    assert any(host == "127.0.0.1" for _, _, host in dns_stub.queries_for("SOA"))


class CloudflareAPI:
    """A minimal stand-in for the Cloudflare v4 API."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.zones = {"example.com": "zone-1", "example.org": "zone-2"}
        self.records: typing.Dict[str, typing.Dict[str, typing.Any]] = dict()
        self.requests: typing.List[typing.Tuple[str, str, typing.Dict[str, str]]] = []
        self.reject_records = False
        self._runner = None
        self._next_id = 0

    @property
    def base_url(self):
        return f"http://{self.host}:{self.port}/client/v4/"

    def _envelope(self, result=None, errors=None, status=200):
        return web.json_response(
            {"success": not errors, "errors": errors or [], "messages": [], "result": result}, status=status
        )

    async def _zones(self, request):
        self.requests.append(("GET", request.path, dict(request.headers)))
        name = request.query.get("name")
        zone_id = self.zones.get(name)
        return self._envelope([{"id": zone_id, "name": name}] if zone_id else [])

    async def _create(self, request):
        self.requests.append(("POST", request.path, dict(request.headers)))
        if self.reject_records:
            return self._envelope(errors=[{"code": 81057, "message": "record already exists"}], status=400)

        self._next_id += 1
        record_id = f"record-{self._next_id}"
        self.records[record_id] = dict(await request.json(), zone_id=request.match_info["zone_id"])
        return self._envelope({"id": record_id})

    async def _delete(self, request):
        self.requests.append(("DELETE", request.path, dict(request.headers)))
        record_id = request.match_info["record_id"]
        if self.records.pop(record_id, None) is None:
            return self._envelope(errors=[{"code": 81044, "message": "record not found"}], status=404)
        return self._envelope({"id": record_id})

    async def run(self):
        app = web.Application()
        app.add_routes(
            [
                web.get("/client/v4/zones", self._zones),
                web.post("/client/v4/zones/{zone_id}/dns_records", self._create),
                web.delete("/client/v4/zones/{zone_id}/dns_records/{record_id}", self._delete),
            ]
        )
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

    async def stop(self):
        await self._runner.cleanup()


@pytest_asyncio.fixture
async def cloudflare_api(unused_tcp_port_factory):
    api = CloudflareAPI("127.0.0.1", unused_tcp_port_factory())
    await api.run()
    yield api
    await api.stop()


@pytest_asyncio.fixture
async def cloudflare(cloudflare_api, zone_resolver):
    provider = CloudflareProvider(
        CloudflareProvider.Config(api_token="dns-token", zone_token="zone-token", base_url=cloudflare_api.base_url),
        zone_resolver,
    )
    yield provider
    await provider.close()


@pytest.mark.asyncio
async def test_cloudflare_present_and_cleanup(cloudflare, cloudflare_api):
    await cloudflare.present("*.example.com", "token-1", "token-1.thumbprint")
    await cloudflare.present("example.com", "token-2", "token-2.thumbprint")

    assert sorted(record["content"] for record in cloudflare_api.records.values()) == sorted(
        [challenge_value("token-1.thumbprint"), challenge_value("token-2.thumbprint")]
    )
    record = cloudflare_api.records["record-1"]
    assert record["name"] == "_acme-challenge.example.com"
    assert record["type"] == "TXT"
    assert record["zone_id"] == "zone-1"

    # The zone ID is looked up once, with the zone token.
    lookups = [r for r in cloudflare_api.requests if r[0] == "GET"]
    assert len(lookups) == 1
    assert lookups[0][2]["Authorization"] == "Bearer zone-token"
    assert all(r[2]["Authorization"] == "Bearer dns-token" for r in cloudflare_api.requests if r[0] == "POST")

    # Cleanup removes the record created for its own token only.
    await cloudflare.cleanup("example.com", "token-2", "token-2.thumbprint")
    assert list(cloudflare_api.records) == ["record-1"]

    await cloudflare.cleanup("*.example.com", "token-1", "token-1.thumbprint")
    assert cloudflare_api.records == {}


@pytest.mark.asyncio
async def test_cloudflare_cleanup_unknown_token(cloudflare, cloudflare_api):
    await cloudflare.cleanup("example.com", "never-presented", KEY_AUTH)

    assert cloudflare_api.requests == []


@pytest.mark.asyncio
async def test_cloudflare_api_error(cloudflare, cloudflare_api):
    cloudflare_api.reject_records = True

    with pytest.raises(CloudflareAPIError) as e:
        await cloudflare.present("example.org", "token", KEY_AUTH)

    assert e.value.status == 400
    assert "81057: record already exists" in str(e.value)


@pytest.mark.asyncio
async def test_cloudflare_unknown_zone(cloudflare, cloudflare_api, dns_stub):
    dns_stub.add_zone("example.net")

    with pytest.raises(ValueError, match="not found in the Cloudflare account"):
        await cloudflare.present("example.net", "token", KEY_AUTH)


@pytest.mark.asyncio
async def test_cloudflare_global_key(cloudflare_api, zone_resolver):
    provider = CloudflareProvider(
        CloudflareProvider.Config(email="admin@example.com", api_key="global-key", base_url=cloudflare_api.base_url),
        zone_resolver,
    )
    try:
        await provider.present("example.org", "token", KEY_AUTH)
    finally:
        await provider.close()

    headers = cloudflare_api.requests[-1][2]
    assert headers["X-Auth-Email"] == "admin@example.com"
    assert headers["X-Auth-Key"] == "global-key"


def test_cloudflare_credentials_required(zone_resolver, monkeypatch):
    for var in ("CLOUDFLARE_API_TOKEN", "CLOUDFLARE_EMAIL", "CLOUDFLARE_API_KEY"):
        monkeypatch.delenv(var, raising=False)

    with pytest.raises(ValueError, match="credentials missing"):
        CloudflareProvider(CloudflareProvider.Config(email="admin@example.com"), zone_resolver)


def test_cloudflare_config_from_environment(monkeypatch):
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "from-env")
    monkeypatch.setenv("CLOUDFLARE_TTL", "300")

    cfg = CloudflareProvider.Config()

    assert cfg.api_token == "from-env"
    assert cfg.ttl == 300
