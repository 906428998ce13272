import pytest
import pytest_asyncio

from acmeissuer import util
from acmeissuer.client import AcmeClient
from acmeissuer.dns import PropagationChecker, ZoneResolver
from .dnsstub import StubDNS, StubDNSClient, dns_validator
from .services import StubCA


@pytest.fixture
def dns_stub():
    stub = StubDNS()
    stub.add_zone("example.com")
    stub.add_zone("example.org")
    return stub


@pytest.fixture
def dns_client(dns_stub):
    return StubDNSClient(dns_stub)


@pytest.fixture
def zone_resolver(dns_client):
    return ZoneResolver(dns_client)


@pytest.fixture
def checker(dns_client, zone_resolver):
    return PropagationChecker(dns_client, zone_resolver)


@pytest.fixture
def account_key(tmp_path):
    path = tmp_path / "account.key"
    util.generate_ec_key(path)
    return path


@pytest_asyncio.fixture
async def ca(unused_tcp_port_factory, dns_stub):
    service = StubCA("127.0.0.1", unused_tcp_port_factory(), validator=dns_validator(dns_stub))
    await service.run()
    yield service
    await service.stop()


@pytest_asyncio.fixture
async def client(ca, account_key):
    client = AcmeClient(
        directory_url=str(ca.directory),
        private_key=account_key,
        contact={"email": "hostmaster@example.com"},
    )
    await client.start()
    yield client
    await client.close()
