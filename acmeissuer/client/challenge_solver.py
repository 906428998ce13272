import abc
import logging
import typing

import acme.messages

from acmeissuer.client.exceptions import AcmeClientException, ProviderError
from acmeissuer.client.messages import ChallengeType
from acmeissuer.dns.propagation import PropagationChecker
from acmeissuer.dns.zone import ZoneResolver
from acmeissuer.providers.base import Provider, SequentialPolicy

logger = logging.getLogger(__name__)


class ChallengeSolver(abc.ABC):
    """An abstract base class for challenge solvers.

    All challenge solver implementations must implement the methods :meth:`complete_challenge` and
    :meth:`cleanup_challenge`.
    """

    SUPPORTED_CHALLENGES: typing.Iterable[ChallengeType]
    """The types of challenges that the challenge solver implementation supports."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def sequential(self) -> typing.Optional[SequentialPolicy]:
        """Set if the solver's challenges must be solved one at a time."""
        return None

    @abc.abstractmethod
    async def complete_challenge(self, domain: str, challenge: acme.messages.ChallengeBody, key_auth: str):
        """Provisions the resource that fulfills the given challenge.

        :param domain: The domain of the authorization the challenge belongs to. Wildcards are
            given as *\\*.domain*.
        :param challenge: The challenge to be completed.
        :param key_auth: The challenge's key authorization.
        """
        pass

    async def await_propagation(self, domain: str, challenge: acme.messages.ChallengeBody, key_auth: str):
        """Delays returning until the CA is expected to see the provisioned resource.

        Does nothing by default.
        """
        pass

    @abc.abstractmethod
    async def cleanup_challenge(self, domain: str, challenge: acme.messages.ChallengeBody, key_auth: str):
        """Performs cleanup for the given challenge.

        This method should de-provision the resource that was provisioned for the given challenge.
        It is called once the challenge is complete, regardless of whether the validation succeeded.
        It is never called if :meth:`complete_challenge` failed.
        """
        pass


class DNS01Solver(ChallengeSolver):
    """Solves *dns-01* challenges by creating TXT records through a DNS provider.

    Record propagation is checked by the :class:`~acmeissuer.dns.propagation.PropagationChecker`,
    using the provider's timeout and interval if it overrides them.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])

    def __init__(self, provider: Provider, checker: PropagationChecker, zone_resolver: ZoneResolver):
        self.provider = provider
        self.checker = checker
        self.zone_resolver = zone_resolver

    @property
    def name(self) -> str:
        return f"dns-01 via {self.provider.name}"

    @property
    def sequential(self) -> typing.Optional[SequentialPolicy]:
        return self.provider.capabilities.sequential

    @staticmethod
    def _token(challenge: acme.messages.ChallengeBody) -> str:
        return challenge.chall.encode("token")

    async def complete_challenge(self, domain: str, challenge: acme.messages.ChallengeBody, key_auth: str):
        """Creates the TXT record of the challenge.

        The zone of the record name is determined before the provider is called, so that
        domains without a resolvable zone fail without touching the provider.

        :raises:

            * :class:`~acmeissuer.dns.exceptions.ZoneNotFound` If the record's zone could not be determined.
            * :class:`~acmeissuer.client.exceptions.ProviderError` If the provider failed.
        """
        info = await self.provider.challenge_info(domain, key_auth)
        zone = await self.zone_resolver.find_zone_by_fqdn(info.effective_fqdn)
        logger.info("Presenting TXT record %s in zone %s via %s", info.effective_fqdn, zone, self.provider.name)

        try:
            await self.provider.present(domain, self._token(challenge), key_auth)
        except Exception as e:
            raise ProviderError(domain, self.provider.name, e) from e

    async def await_propagation(self, domain: str, challenge: acme.messages.ChallengeBody, key_auth: str):
        """Waits until the TXT record is visible.

        :raises: :class:`~acmeissuer.dns.exceptions.PropagationTimeout` If the record did not show up in time.
        """
        info = await self.provider.challenge_info(domain, key_auth)

        if (policy := self.provider.capabilities.timeout) is not None:
            await self.checker.wait_for(info.fqdn, info.value, timeout=policy.timeout, interval=policy.interval)
        else:
            await self.checker.wait_for(info.fqdn, info.value)

    async def cleanup_challenge(self, domain: str, challenge: acme.messages.ChallengeBody, key_auth: str):
        try:
            await self.provider.cleanup(domain, self._token(challenge), key_auth)
        except Exception as e:
            raise ProviderError(domain, self.provider.name, e) from e


def _challenge_type(challenge: acme.messages.ChallengeBody) -> str:
    typ = challenge.chall.typ
    if isinstance(typ, str):
        return typ
    # Unrecognized challenges only carry their raw JSON.
    return getattr(challenge.chall, "jobj", {}).get("type", "")


def _base_domain(domain: str) -> str:
    domain = domain.lower().rstrip(".")
    return domain[2:] if domain.startswith("*.") else domain


class SolverManager:
    """Chooses the solver and the challenge for each authorization.

    Holds one default solver per challenge type and optional *dns-01* solvers for specific domains.
    A domain specific solver applies to the domain and all of its subdomains, the longest matching
    domain wins.
    """

    def __init__(self):
        self._solvers: typing.Dict[ChallengeType, ChallengeSolver] = dict()
        self._domain_solvers: typing.Dict[str, ChallengeSolver] = dict()

    @property
    def solvers(self) -> typing.List[ChallengeSolver]:
        """All registered solvers, without duplicates."""
        unique = {id(s): s for s in list(self._solvers.values()) + list(self._domain_solvers.values())}
        return list(unique.values())

    def register_challenge_solver(self, challenge_solver: ChallengeSolver, domains: typing.Iterable[str] = None):
        """Registers a challenge solver.

        :param challenge_solver: The challenge solver to register.
        :param domains: If given, the solver is only used for these domains and their subdomains.
        :raises: :class:`ValueError` If a challenge solver is already registered for any of
            the challenge types, or domains, that *challenge_solver* would serve.
        """
        if domains:
            if ChallengeType.DNS_01 not in challenge_solver.SUPPORTED_CHALLENGES:
                raise ValueError("Domain specific solvers must support dns-01")

            for domain in domains:
                domain = _base_domain(domain)
                if domain in self._domain_solvers:
                    raise ValueError(f"A challenge solver for domain {domain} is already registered")
                self._domain_solvers[domain] = challenge_solver
            return

        for challenge_type in challenge_solver.SUPPORTED_CHALLENGES:
            if self._solvers.get(challenge_type):
                raise ValueError(f"A challenge solver for type {challenge_type.value} is already registered")
            else:
                self._solvers[challenge_type] = challenge_solver

    def solver_for(self, domain: str, challenge_type: ChallengeType) -> typing.Optional[ChallengeSolver]:
        if challenge_type == ChallengeType.DNS_01 and self._domain_solvers:
            labels = _base_domain(domain).split(".")
            for i in range(len(labels)):
                if (solver := self._domain_solvers.get(".".join(labels[i:]))) is not None:
                    return solver

        return self._solvers.get(challenge_type)

    def choose(
        self, authorization: acme.messages.AuthorizationResource
    ) -> typing.Tuple[ChallengeSolver, acme.messages.ChallengeBody]:
        """Picks the challenge to complete for an authorization.

        *dns-01* is preferred, the other types are tried in descending order of their names.

        :raises: :class:`~acmeissuer.client.exceptions.AcmeClientException` If no registered solver supports
            any of the offered challenges.
        """
        domain = authorization.body.identifier.value
        if authorization.body.wildcard:
            domain = f"*.{domain}"

        challenges = sorted(authorization.body.challenges, key=_challenge_type, reverse=True)
        challenges.sort(key=lambda c: _challenge_type(c) != ChallengeType.DNS_01.value)

        for challenge in challenges:
            try:
                challenge_type = ChallengeType(_challenge_type(challenge))
            except ValueError:
                continue

            if (solver := self.solver_for(domain, challenge_type)) is not None:
                logger.debug("Chose %s for %s, solver: %s", challenge_type.value, domain, solver.name)
                return solver, challenge

        offered = ", ".join(_challenge_type(c) for c in challenges)
        raise AcmeClientException(f"No solver is able to complete any of the challenges offered for {domain}: {offered}")
