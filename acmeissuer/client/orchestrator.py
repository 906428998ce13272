import asyncio
import dataclasses
import logging
import typing

import acme.messages
import aiohttp
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from acmeissuer import util
from acmeissuer.client.authorization import (
    DEFAULT_CLEANUP_GRACE,
    AuthorizationWorker,
    Stage,
    schedule_workers,
)
from acmeissuer.client.challenge_solver import SolverManager
from acmeissuer.client.client import AUTHORIZATION_POLLING, ORDER_POLLING, AcmeClient, PollingPolicy
from acmeissuer.client.exceptions import AcmeClientException, AuthorizationError, ObtainError

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class CertificateResource:
    """The result of a successful issuance."""

    domain: str
    """The main domain, i.e. the first requested domain."""
    domains: typing.List[str]
    cert_url: str
    certificate: str
    """The leaf certificate, followed by the issuer chain if bundled. PEM encoded."""
    issuer_certificate: str
    """The issuer chain, PEM encoded."""
    private_key: typing.Optional[bytes]
    """The PEM encoded private key, *None* if the certificate was obtained for a supplied CSR."""
    csr: bytes
    """The PEM encoded CSR."""


def sanitize_domains(domains: typing.Iterable[str]) -> typing.List[str]:
    """Trims and lowercases the domains and removes duplicates, keeping the order."""
    cleaned = [domain.strip().lower().rstrip(".") for domain in domains]
    return list(dict.fromkeys(domain for domain in cleaned if domain))


class OrderOrchestrator:
    """Obtains certificates by driving an order through its authorizations, finalization and download.

    The authorizations of an order are processed concurrently by
    :class:`~acmeissuer.client.authorization.AuthorizationWorker` instances.
    """

    def __init__(
        self,
        client: AcmeClient,
        solvers: SolverManager,
        *,
        key_type: typing.Union[util.KeyType, str] = util.KeyType.RSA2048,
        authorization_polling: PollingPolicy = AUTHORIZATION_POLLING,
        order_polling: PollingPolicy = ORDER_POLLING,
        cleanup_grace: float = DEFAULT_CLEANUP_GRACE,
        always_deactivate: bool = False,
    ):
        """Creates an :class:`OrderOrchestrator` instance.

        :param client: A started client.
        :param solvers: The solvers to complete challenges with.
        :param key_type: The type of the private keys generated for new certificates.
        :param authorization_polling: Backoff used while the CA validates an authorization.
        :param order_polling: Backoff used while the CA issues the certificate.
        :param cleanup_grace: Time in seconds a challenge cleanup may take.
        :param always_deactivate: Whether to deactivate the order's authorizations after issuance as well.
            They are always deactivated if an authorization fails.
        """
        self.client = client
        self.solvers = solvers
        self.key_type = util.KeyType(key_type)
        self.authorization_polling = authorization_polling
        self.order_polling = order_polling
        self.cleanup_grace = cleanup_grace
        self.always_deactivate = always_deactivate

    async def obtain(
        self,
        domains: typing.Iterable[str],
        private_key: util.PrivateKey = None,
        bundle: bool = True,
        must_staple: bool = False,
    ) -> CertificateResource:
        """Obtains a certificate for the given domains.

        :param domains: The domains, the first one becomes the common name.
        :param private_key: The certificate's private key. A key of the configured type is generated if omitted.
        :param bundle: Whether to append the issuer chain to the certificate.
        :param must_staple: Whether to request the OCSP Must-Staple extension.
        :raises:

            * :class:`ValueError` If no domain was given.
            * :class:`~acmeissuer.client.exceptions.ObtainError` If any domain could not be authorized or
              the certificate could not be issued.
            * :class:`acme.messages.Error` If the CA refused to create the order.
        """
        domains = sanitize_domains(domains)
        if not domains:
            raise ValueError("No domains to obtain a certificate for")

        logger.info("[%s] Obtaining bundled SAN certificate", ", ".join(domains))

        private_key = private_key or util.generate_private_key(self.key_type)
        csr = util.generate_csr(domains, private_key, must_staple=must_staple)

        return await self._process(domains, csr, util.private_key_bytes(private_key), bundle)

    async def obtain_for_csr(self, csr: x509.CertificateSigningRequest, bundle: bool = True) -> CertificateResource:
        """Obtains a certificate for an existing CSR.

        The domains are taken from the CSR's common name and subject alternative names.

        :param csr: The certificate signing request.
        :param bundle: Whether to append the issuer chain to the certificate.
        :raises: See :meth:`obtain`.
        """
        domains = sanitize_domains(util.names_of(csr))
        if not domains:
            raise ValueError("The CSR contains no domains")

        logger.info("[%s] Obtaining certificate for CSR", ", ".join(domains))

        return await self._process(domains, csr, None, bundle)

    async def _process(
        self,
        domains: typing.List[str],
        csr: x509.CertificateSigningRequest,
        private_key: typing.Optional[bytes],
        bundle: bool,
    ) -> CertificateResource:
        order = await self.client.order_create(domains)

        try:
            await self._authorize(order)
        except ObtainError:
            # Do not leave partially solved orders behind.
            await self._deactivate(order)
            raise

        try:
            return await self._issue(order, domains, csr, private_key, bundle)
        finally:
            if self.always_deactivate:
                await self._deactivate(order)

    async def _deactivate(self, order: acme.messages.OrderResource) -> None:
        for authorization_url in order.body.authorizations:
            try:
                await self.client.authorization_deactivate(authorization_url)
            except (AcmeClientException, acme.messages.Error, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.info("Unable to deactivate authorization %s: %s", authorization_url, e)

    async def _authorize(self, order: acme.messages.OrderResource) -> None:
        authorizations = [await self.client.authorization_get(url) for url in order.body.authorizations]

        failures: typing.Dict[str, AuthorizationError] = dict()
        workers = []
        for authorization in authorizations:
            domain = authorization.body.identifier.value
            if authorization.body.wildcard:
                domain = f"*.{domain}"

            try:
                solver, challenge = self.solvers.choose(authorization)
            except AcmeClientException as e:
                failures[domain] = AuthorizationError(domain, Stage.START, e)
                continue

            workers.append(
                AuthorizationWorker(
                    self.client,
                    authorization,
                    solver,
                    challenge,
                    polling=self.authorization_polling,
                    cleanup_grace=self.cleanup_grace,
                )
            )

        for result in await schedule_workers(workers):
            if not result.ok:
                failures[result.domain] = result.error

        if failures:
            raise ObtainError(failures)

    async def _issue(
        self,
        order: acme.messages.OrderResource,
        domains: typing.List[str],
        csr: x509.CertificateSigningRequest,
        private_key: typing.Optional[bytes],
        bundle: bool,
    ) -> CertificateResource:
        try:
            finalized = await self.client.order_finalize(order, csr)
            finalized = await self.client.order_poll(finalized, self.order_polling)
            chain = await self.client.certificate_get(finalized)
            leaf, issuer = util.split_chain(chain)
        except Exception as e:
            logger.error("[%s] Could not obtain the certificate: %s", ", ".join(domains), e)
            raise ObtainError({domain: AuthorizationError(domain, Stage.FINALIZING, e) for domain in domains}) from e

        logger.info("[%s] Server responded with a certificate", domains[0])

        return CertificateResource(
            domain=domains[0],
            domains=domains,
            cert_url=finalized.body.certificate,
            certificate=leaf + issuer if bundle else leaf,
            issuer_certificate=issuer,
            private_key=private_key,
            csr=csr.public_bytes(serialization.Encoding.PEM),
        )
