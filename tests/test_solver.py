import pytest

from acmeissuer.client import AcmeClientException, ChallengeSolver, DNS01Solver, ProviderError, SolverManager
from acmeissuer.client.messages import ChallengeType
from acmeissuer.dns import PropagationTimeout, ZoneNotFound
from acmeissuer.providers import SequentialPolicy, challenge_value
from .dnsstub import StubProvider
from .services import make_authorization

KEY_AUTH = "token.thumbprint"


class DummySolver(ChallengeSolver):
    def __init__(self, *types: ChallengeType):
        self.SUPPORTED_CHALLENGES = frozenset(types)

    async def complete_challenge(self, domain, challenge, key_auth):
        pass

    async def cleanup_challenge(self, domain, challenge, key_auth):
        pass


@pytest.fixture
def provider(zone_resolver, dns_stub):
    return StubProvider(StubProvider.Config(), zone_resolver, dns_stub)


@pytest.fixture
def dns_solver(provider, checker, zone_resolver):
    return DNS01Solver(provider, checker, zone_resolver)


def test_choose_prefers_dns01(dns_solver):
    solvers = SolverManager()
    solvers.register_challenge_solver(dns_solver)
    solvers.register_challenge_solver(DummySolver(ChallengeType.HTTP_01, ChallengeType.TLS_ALPN_01))

    solver, challenge = solvers.choose(make_authorization("example.com", ["http-01", "tls-alpn-01", "dns-01"]))

    assert solver is dns_solver
    assert challenge.chall.typ == "dns-01"


def test_choose_descending_type_names():
    solvers = SolverManager()
    solvers.register_challenge_solver(DummySolver(ChallengeType.HTTP_01, ChallengeType.TLS_ALPN_01))

    _, challenge = solvers.choose(make_authorization("example.com", ["http-01", "tls-alpn-01"]))

    # Not every acme release knows tls-alpn-01, so check the type the CA sent.
    assert challenge.uri.rsplit("/", 1)[-1] == "tls-alpn-01"


def test_choose_skips_unknown_types(dns_solver):
    solvers = SolverManager()
    solvers.register_challenge_solver(dns_solver)

    solver, challenge = solvers.choose(make_authorization("example.com", ["zzz-01", "dns-01"]))

    assert solver is dns_solver
    assert challenge.chall.typ == "dns-01"


def test_choose_without_solver(dns_solver):
    solvers = SolverManager()
    solvers.register_challenge_solver(dns_solver)

    with pytest.raises(AcmeClientException, match="example.com: http-01"):
        solvers.choose(make_authorization("example.com", ["http-01"]))


def test_domain_specific_solvers(zone_resolver, checker, dns_stub):
    default = DNS01Solver(StubProvider(StubProvider.Config(), zone_resolver, dns_stub), checker, zone_resolver)
    org = DNS01Solver(StubProvider(StubProvider.Config(), zone_resolver, dns_stub), checker, zone_resolver)
    sub = DNS01Solver(StubProvider(StubProvider.Config(), zone_resolver, dns_stub), checker, zone_resolver)

    solvers = SolverManager()
    solvers.register_challenge_solver(default)
    solvers.register_challenge_solver(org, domains=["example.org"])
    solvers.register_challenge_solver(sub, domains=["*.sub.example.org"])

    assert solvers.solver_for("example.com", ChallengeType.DNS_01) is default
    assert solvers.solver_for("notexample.org", ChallengeType.DNS_01) is default
    assert solvers.solver_for("example.org", ChallengeType.DNS_01) is org
    assert solvers.solver_for("*.example.org", ChallengeType.DNS_01) is org
    assert solvers.solver_for("www.Example.org.", ChallengeType.DNS_01) is org
    assert solvers.solver_for("sub.example.org", ChallengeType.DNS_01) is sub
    assert solvers.solver_for("a.b.sub.example.org", ChallengeType.DNS_01) is sub

    solver, _ = solvers.choose(make_authorization("example.org", ["dns-01"], wildcard=True))
    assert solver is org
    assert len(solvers.solvers) == 3


def test_register_duplicates(dns_solver):
    solvers = SolverManager()
    solvers.register_challenge_solver(dns_solver)
    solvers.register_challenge_solver(dns_solver, domains=["example.org"])

    with pytest.raises(ValueError):
        solvers.register_challenge_solver(DummySolver(ChallengeType.DNS_01))

    with pytest.raises(ValueError):
        solvers.register_challenge_solver(dns_solver, domains=["EXAMPLE.org"])

    with pytest.raises(ValueError):
        solvers.register_challenge_solver(DummySolver(ChallengeType.HTTP_01), domains=["example.net"])


def test_sequential_capability(zone_resolver, checker):
    provider = StubProvider(StubProvider.Config(sequence_interval=2.5), zone_resolver)
    solver = DNS01Solver(provider, checker, zone_resolver)

    assert solver.sequential == SequentialPolicy(2.5)
    assert DummySolver(ChallengeType.HTTP_01).sequential is None


@pytest.mark.asyncio
async def test_complete_challenge(dns_stub, provider, dns_solver):
    authorization = make_authorization("*.example.com", ["dns-01"])
    challenge = authorization.body.challenges[0]

    await dns_solver.complete_challenge("*.example.com", challenge, KEY_AUTH)
    await dns_solver.await_propagation("*.example.com", challenge, KEY_AUTH)

    assert dns_stub.txt_values("_acme-challenge.example.com.") == [challenge_value(KEY_AUTH)]
    assert provider.calls_of("present")[0][2] == challenge.chall.encode("token")

    await dns_solver.cleanup_challenge("*.example.com", challenge, KEY_AUTH)
    assert dns_stub.txt_values("_acme-challenge.example.com.") == []


@pytest.mark.asyncio
async def test_complete_challenge_without_zone(provider, dns_solver):
    challenge = make_authorization("www.unknown.test", ["dns-01"]).body.challenges[0]

    with pytest.raises(ZoneNotFound):
        await dns_solver.complete_challenge("www.unknown.test", challenge, KEY_AUTH)

    assert provider.calls == []


@pytest.mark.asyncio
async def test_provider_errors_are_wrapped(zone_resolver, checker, dns_stub):
    provider = StubProvider(StubProvider.Config(fail_present=["example.com"], fail_cleanup=True), zone_resolver)
    solver = DNS01Solver(provider, checker, zone_resolver)
    challenge = make_authorization("example.com", ["dns-01"]).body.challenges[0]

    with pytest.raises(ProviderError) as e:
        await solver.complete_challenge("example.com", challenge, KEY_AUTH)
    assert e.value.provider == "stub"
    assert isinstance(e.value.cause, RuntimeError)

    with pytest.raises(ProviderError):
        await solver.cleanup_challenge("example.com", challenge, KEY_AUTH)


@pytest.mark.asyncio
async def test_provider_timeout_policy(zone_resolver, checker, dns_stub):
    cfg = StubProvider.Config(publish=False, propagation_timeout=0.1, polling_interval=0.02)
    solver = DNS01Solver(StubProvider(cfg, zone_resolver, dns_stub), checker, zone_resolver)
    challenge = make_authorization("example.com", ["dns-01"]).body.challenges[0]

    await solver.complete_challenge("example.com", challenge, KEY_AUTH)

    with pytest.raises(PropagationTimeout) as e:
        await solver.await_propagation("example.com", challenge, KEY_AUTH)

    assert e.value.timeout == 0.1
