import asyncio
import dataclasses
import datetime
import email.utils
import logging
import ssl
import typing
from pathlib import Path

import acme.messages
import josepy
from acme import jws
from aiohttp import ClientConnectionError, ClientResponseError, ClientSession
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from acmeissuer.client import messages
from acmeissuer.client.exceptions import PollingException, RateLimited
from acmeissuer.version import __version__

logger = logging.getLogger(__name__)

ObjT = typing.TypeVar("ObjT")


@dataclasses.dataclass(frozen=True)
class PollingPolicy:
    """Exponential backoff parameters for polling a resource until it reaches a final state."""

    delay: float
    """Initial delay in seconds between two requests, used when the CA sends no *Retry-After*."""
    max_delay: float
    """Upper bound for the delay."""
    timeout: float
    """Time in seconds after which polling is given up."""
    multiplier: float = 2.0

    @classmethod
    def from_delay(cls, delay: float) -> "PollingPolicy":
        """Derives a policy from the initial delay: the delay grows up to ten times, polling ends after a hundred."""
        return cls(delay=delay, max_delay=10 * delay, timeout=100 * delay)


AUTHORIZATION_POLLING = PollingPolicy.from_delay(5.0)
ORDER_POLLING = PollingPolicy(delay=1.0, max_delay=10.0, timeout=180.0)


def parse_retry_after(value: typing.Optional[str], now: datetime.datetime = None) -> typing.Optional[float]:
    """Parses a *Retry-After* header given either as delta-seconds or as HTTP-date.

    :param value: The header value.
    :param now: The current time, used for HTTP-dates. Defaults to :func:`datetime.datetime.now`.
    :return: The delay in seconds, never negative, or *None* if the header is absent or malformed.
    """
    if not value:
        return None

    value = value.strip()
    if value.isdigit():
        return float(value)

    try:
        date = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring malformed Retry-After header: %s", value)
        return None

    if date.tzinfo is None:
        date = date.replace(tzinfo=datetime.timezone.utc)

    now = now or datetime.datetime.now(datetime.timezone.utc)
    return max(0.0, (date - now).total_seconds())


@dataclasses.dataclass
class ExternalAccountBindingCredentials:
    """Stores external account binding credentials to later create a binding JWS using
    :class:`~acme.messages.ExternalAccountBinding`.
    """

    kid: str
    """The external account binding's key identifier"""
    hmac_key: str
    """The external account binding's symmetric encryption key"""

    def create_eab(self, public_key: josepy.jwk.JWK, directory: dict) -> dict:
        """Creates an external account binding from the stored credentials.

        :param public_key: The account's public key
        :param directory: The ACME server's directory
        :return: The JWS representing the external account binding
        """
        if self.kid and self.hmac_key:
            return acme.messages.ExternalAccountBinding.from_data(public_key, self.kid, self.hmac_key, directory)
        else:
            raise ValueError("Must specify both kid and hmac_key")


class AcmeClient:
    """RFC 8555 compliant client.

    The client holds the account key, the CA's directory (fetched once by :meth:`start`), the account
    and a pool of nonces. It can be shared by concurrently running tasks.
    """

    FINALIZE_DELAY = 3.0
    """The delay in seconds between finalization attempts while the order is not ready."""
    FINALIZE_RETRIES = 5
    NETWORK_RETRIES = 3
    """The number of times reads are retried on connection errors, timeouts and server errors."""
    NETWORK_RETRY_DELAY = 1.0
    """The delay in seconds before the first network retry, doubled on every further retry."""

    def __init__(
        self,
        *,
        directory_url: str,
        private_key: typing.Union[str, Path],
        contact: typing.Dict[str, str] = None,
        server_cert: str = None,
        kid: str = None,
        hmac_key: str = None,
        user_agent: str = None,
    ):
        """Creates an :class:`AcmeClient` instance.

        :param directory_url: The ACME server's directory
        :param private_key: Path of the private key to use to register the ACME account. Must be a PEM-encoded RSA
            or EC key file.
        :param contact: :class:`dict` containing the contact info to supply on registration. May contain a key *phone*
            and a key *email*.
        :param server_cert: Path of a CA certificate bundle to trust in addition to the system's
        :param kid: The external account binding's key identifier to be used on registration
        :param hmac_key: The external account binding's symmetric encryption key to be used on registration
        :param user_agent: The value of the *User-Agent* header
        """
        self._ssl_context = ssl.create_default_context()

        if server_cert:
            self._ssl_context.load_verify_locations(cafile=server_cert)

        self._session = ClientSession(headers={"User-Agent": user_agent or f"acmeissuer/{__version__}"})

        self._directory_url = directory_url

        self._private_key, self._alg = self._open_key(private_key)
        # Filter empty strings
        self._contact = {k: v for k, v in (contact or {}).items() if v}

        self._directory: typing.Dict[str, typing.Any] = dict()
        self._nonces: typing.Set[str] = set()
        self._account: typing.Optional[acme.messages.RegistrationResource] = None

        self.eab_credentials = ExternalAccountBindingCredentials(kid, hmac_key)

    @staticmethod
    def _open_key(private_key: typing.Union[str, Path]) -> typing.Tuple[josepy.jwk.JWK, josepy.jwa.JWASignature]:
        data = Path(private_key).read_bytes()

        try:
            key = serialization.load_pem_private_key(data, password=None)
        except ValueError as e:
            raise ValueError(f"Bad Private Key in file {private_key}") from e

        if isinstance(key, rsa.RSAPrivateKey):
            return josepy.jwk.JWKRSA.load(data), josepy.jwa.RS256
        elif isinstance(key, ec.EllipticCurvePrivateKey):
            alg = {
                256: josepy.jwa.ES256,
                384: josepy.jwa.ES384,
                521: josepy.jwa.ES512,
            }.get(key.curve.key_size)
            if alg is None:
                raise ValueError(f"Unsupported curve {key.curve.name} in file {private_key}")
            return josepy.jwk.JWKEC.load(data), alg
        else:
            raise ValueError(f"Bad Private Key in file {private_key}")

    @property
    def account(self) -> typing.Optional[acme.messages.RegistrationResource]:
        """The account registered by :meth:`start`, *None* before."""
        return self._account

    @property
    def directory(self) -> typing.Dict[str, typing.Any]:
        return self._directory

    async def __aenter__(self) -> "AcmeClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        await self._session.close()

    async def start(self):
        """Starts the client's session.

        This method must be called after initialization and before
        making requests to an ACME server, as it fetches the ACME directory
        and registers the private key with the server.

        :raises: :class:`ValueError` If the directory lacks a mandatory resource.
        """
        async with self._session.get(self._directory_url, ssl=self._ssl_context) as resp:
            resp.raise_for_status()
            self._directory = await resp.json()

        missing = [key for key in ("newNonce", "newAccount", "newOrder") if key not in self._directory]
        if missing:
            raise ValueError(f"The directory at {self._directory_url} lacks {', '.join(missing)}")

        # newAccount returns the existing account if the key is already registered.
        await self.account_register()

    async def account_register(
        self,
        email: str = None,
        phone: str = None,
        kid: str = None,
        hmac_key: str = None,
    ) -> acme.messages.RegistrationResource:
        """Registers an account with the CA.

        Also sends the given contact information and stores the account internally
        for subsequent requests.
        If the private key is already registered, then the account is only queried.

        It is usually not necessary to call this method as the account is
        registered or fetched automatically in :meth:`start`.

        :param email: The contact email
        :param phone: The contact phone number
        :param kid: The external account binding's key identifier
        :param hmac_key: The external account binding's symmetric encryption key
        :raises: :class:`acme.messages.Error` If the server rejects any of the contact information, the private
            key, or the external account binding.
        :return: The account.
        """
        eab_credentials = (
            ExternalAccountBindingCredentials(kid, hmac_key) if kid and hmac_key else self.eab_credentials
        )

        try:
            external_account_binding = eab_credentials.create_eab(self._private_key.public_key(), self._directory)
        except ValueError:
            external_account_binding = None
            if eab_credentials.kid or eab_credentials.hmac_key:
                logger.warning(
                    "The external account binding credentials are invalid, "
                    "i.e. the kid or the hmac_key was not supplied. Trying without EAB."
                )

        reg = acme.messages.Registration.from_data(
            email=email or self._contact.get("email"),
            phone=phone or self._contact.get("phone"),
            terms_of_service_agreed=True,
            external_account_binding=external_account_binding,
        )

        self._account = None
        resp, account_obj = await self._signed_request(reg, self._directory["newAccount"])
        self._account = acme.messages.RegistrationResource(
            body=acme.messages.Registration.from_json(account_obj), uri=resp.headers["Location"]
        )
        logger.info("Using account %s", self._account.uri)
        return self._account

    async def account_lookup(self) -> acme.messages.RegistrationResource:
        """Looks up an account using the stored private key.

        Also stores the account internally for subsequent requests.

        :raises: :class:`acme.messages.Error` If no account associated with the private key exists.
        """
        reg = acme.messages.Registration.from_data(terms_of_service_agreed=True, only_return_existing=True)

        self._account = None  # Otherwise the kid is sent instead of the JWK. Results in the request failing.
        resp, account_obj = await self._signed_request(reg, self._directory["newAccount"])
        self._account = acme.messages.RegistrationResource(
            body=acme.messages.Registration.from_json(account_obj), uri=resp.headers["Location"]
        )
        return self._account

    async def order_create(self, domains: typing.Iterable[str]) -> acme.messages.OrderResource:
        """Creates a new order for the given domains.

        :param domains: The fully qualified domain names, wildcards included.
        :raises: :class:`acme.messages.Error` If the server is unwilling to create an order with the requested
            identifiers.
        :returns: The new order.
        """
        order = acme.messages.NewOrder(
            identifiers=tuple(
                acme.messages.Identifier(typ=acme.messages.IDENTIFIER_FQDN, value=domain) for domain in domains
            )
        )

        resp, order_obj = await self._signed_request(order, self._directory["newOrder"])
        order = acme.messages.OrderResource(body=acme.messages.Order.from_json(order_obj), uri=resp.headers["Location"])
        logger.info("Created order %s", order.uri)
        return order

    async def order_finalize(
        self, order: acme.messages.OrderResource, csr: x509.CertificateSigningRequest
    ) -> acme.messages.OrderResource:
        """Submits the CSR to the order's finalize URL.

        Retries up to :attr:`FINALIZE_RETRIES` times while the CA reports the order as not ready.
        The returned order is usually still *processing*, see :meth:`order_poll`.

        :param order: Order that is to be finalized.
        :param csr: The CSR that is submitted to apply for certificate issuance.
        :raises: :class:`acme.messages.Error` If the server is unwilling to finalize the order.
        :returns: The order as returned by the finalize request.
        """
        cert_req = messages.CertificateRequest(csr=csr)

        for attempt in range(self.FINALIZE_RETRIES):
            try:
                resp, order_obj = await self._signed_request(cert_req, order.body.finalize)
                break
            except acme.messages.Error as e:
                # Make sure that the order is in state READY before moving on.
                if e.code != "orderNotReady" or attempt == self.FINALIZE_RETRIES - 1:
                    raise
                await asyncio.sleep(self.FINALIZE_DELAY)

        return acme.messages.OrderResource(
            body=acme.messages.Order.from_json(order_obj), uri=resp.headers.get("Location", order.uri)
        )

    async def order_get(self, order_url: str) -> acme.messages.OrderResource:
        """Fetches an order given its URL.

        :param order_url: The order's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the order does not exist.
        :return: The fetched order.
        """
        order, _ = await self._order_fetch(order_url)
        return order

    async def _order_fetch(self, order_url: str) -> typing.Tuple[acme.messages.OrderResource, typing.Optional[float]]:
        resp, order_obj = await self._signed_request(None, order_url, network_retries=self.NETWORK_RETRIES)
        order = acme.messages.OrderResource(body=acme.messages.Order.from_json(order_obj), uri=order_url)
        return order, parse_retry_after(resp.headers.get("Retry-After"))

    async def order_poll(
        self, order: acme.messages.OrderResource, policy: PollingPolicy = ORDER_POLLING
    ) -> acme.messages.OrderResource:
        """Polls the order until it is *valid*.

        :param order: The order to poll.
        :param policy: The polling backoff.
        :raises: :class:`~acmeissuer.client.exceptions.PollingException` If the order became invalid or
            did not become valid in time.
        """
        return await self._poll_until(
            self._order_fetch,
            order.uri,
            predicate=lambda o: o.body.status == acme.messages.STATUS_VALID,
            negative_predicate=lambda o: o.body.status == acme.messages.STATUS_INVALID,
            policy=policy,
        )

    async def authorization_get(self, authorization_url: str) -> acme.messages.AuthorizationResource:
        """Fetches an authorization given its URL.

        :param authorization_url: The authorization's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the authorization does not exist.
        :return: The fetched authorization.
        """
        authorization, _ = await self._authorization_fetch(authorization_url)
        return authorization

    async def _authorization_fetch(
        self, authorization_url: str
    ) -> typing.Tuple[acme.messages.AuthorizationResource, typing.Optional[float]]:
        resp, authorization_obj = await self._signed_request(
            None, authorization_url, network_retries=self.NETWORK_RETRIES
        )
        authorization = acme.messages.AuthorizationResource(
            body=acme.messages.Authorization.from_json(authorization_obj), uri=authorization_url
        )
        return authorization, parse_retry_after(resp.headers.get("Retry-After"))

    async def authorization_poll(
        self, authorization_url: str, policy: PollingPolicy = AUTHORIZATION_POLLING
    ) -> acme.messages.AuthorizationResource:
        """Polls the authorization until it leaves the *pending* and *processing* states.

        The CA's *Retry-After* takes precedence over the policy's delay.

        :param authorization_url: The authorization's URL.
        :param policy: The polling backoff.
        :raises: :class:`~acmeissuer.client.exceptions.PollingException` If the authorization did not reach
            a final state in time.
        :return: The authorization in its final state, which may be *invalid*.
        """
        return await self._poll_until(
            self._authorization_fetch,
            authorization_url,
            predicate=lambda a: not messages.is_pending(a.body),
            policy=policy,
        )

    async def authorization_deactivate(self, authorization_url: str) -> acme.messages.AuthorizationResource:
        """Deactivates an authorization so that the CA stops considering it for new orders.

        :param authorization_url: The authorization's URL.
        :raises: :class:`acme.messages.Error` If the CA refused, e.g. because the authorization is already invalid.
        :return: The deactivated authorization.
        """
        update = acme.messages.UpdateAuthorization(status=acme.messages.STATUS_DEACTIVATED)
        _, authorization_obj = await self._signed_request(update, authorization_url)
        return acme.messages.AuthorizationResource(
            body=acme.messages.Authorization.from_json(authorization_obj), uri=authorization_url
        )

    async def challenge_get(self, challenge_url: str) -> acme.messages.ChallengeBody:
        """Fetches a challenge given its URL.

        :param challenge_url: The challenge's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the challenge does not exist.
        :return: The fetched challenge.
        """
        _, challenge_obj = await self._signed_request(None, challenge_url, network_retries=self.NETWORK_RETRIES)
        return acme.messages.ChallengeBody.from_json(challenge_obj)

    async def challenge_validate(self, challenge_url: str) -> acme.messages.ChallengeBody:
        """Tells the CA that the challenge is ready for validation.

        :param challenge_url: The challenge's URL.
        :raises: :class:`acme.messages.Error` If the CA rejected the request.
        :return: The challenge as returned by the CA.
        """
        _, challenge_obj = await self._signed_request(None, challenge_url, post_as_get=False)
        return acme.messages.ChallengeBody.from_json(challenge_obj)

    async def certificate_get(self, order: acme.messages.OrderResource) -> str:
        """Downloads the given order's certificate chain.

        :param order: The order whose certificate to download.
        :raises:

            * :class:`aiohttp.ClientResponseError` If the certificate does not exist.
            * :class:`ValueError` If the order has not been finalized yet, i.e. the certificate \
                property is *None*.

        :return: The order's certificate chain encoded as PEM, leaf first.
        """
        if not order.body.certificate:
            raise ValueError("This order has not been finalized")

        _, pem = await self._signed_request(None, order.body.certificate, network_retries=self.NETWORK_RETRIES)

        return pem

    async def certificate_revoke(
        self,
        certificate: x509.Certificate,
        reason: messages.RevocationReason = None,
    ) -> bool:
        """Revokes the given certificate.

        :param certificate: The certificate to revoke.
        :param reason: Optional reason for revocation.
        :raises: :class:`acme.messages.Error` If the revocation did not succeed.
        :return: *True* if the revocation succeeded.
        """
        cert_rev = messages.Revocation(certificate=certificate, reason=reason)
        resp, _ = await self._signed_request(cert_rev, self._directory["revokeCert"])

        return resp.status == 200

    def key_authorization(self, challenge: acme.messages.ChallengeBody) -> str:
        """Computes the key authorization of a challenge for the account key."""
        return challenge.chall.key_authorization(self._private_key)

    async def _poll_until(
        self,
        fetch: typing.Callable[[str], typing.Awaitable[typing.Tuple[ObjT, typing.Optional[float]]]],
        url: str,
        *,
        predicate: typing.Callable[[ObjT], bool],
        negative_predicate: typing.Callable[[ObjT], bool] = None,
        policy: PollingPolicy,
    ) -> ObjT:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.timeout
        delay = policy.delay

        while True:
            result, retry_after = await fetch(url)

            if predicate(result):
                return result

            if negative_predicate is not None and negative_predicate(result):
                raise PollingException(result, f"Polling unsuccessful: {url}, {fetch.__name__} reached a final state")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PollingException(result, f"Polling unsuccessful: {url} did not change within {policy.timeout}s")

            wait = retry_after if retry_after is not None else delay
            logger.debug("Polling %s again in %.1fs", url, min(wait, remaining))
            await asyncio.sleep(min(wait, remaining))
            delay = min(delay * policy.multiplier, policy.max_delay)

    async def _fetch_nonce(self) -> str:
        async with self._session.head(self._directory["newNonce"], ssl=self._ssl_context) as resp:
            if "Replay-Nonce" not in resp.headers:
                raise ClientResponseError(
                    resp.request_info, resp.history, status=resp.status, message="Response lacks Replay-Nonce"
                )
            logger.debug("Fetched new nonce %s", resp.headers["Replay-Nonce"])
            return resp.headers["Replay-Nonce"]

    async def _get_nonce(self) -> str:
        try:
            return self._nonces.pop()
        except KeyError:
            return await self._fetch_nonce()

    def _wrap_in_jws(self, obj: typing.Optional[josepy.JSONDeSerializable], nonce: str, url: str, post_as_get: bool):
        if post_as_get:
            jobj = obj.json_dumps(indent=2).encode() if obj else b""
        else:
            jobj = b"{}"
        kwargs = {"nonce": josepy.b64decode(nonce), "url": url}
        if self._account is not None:
            kwargs["kid"] = self._account.uri
        return jws.JWS.sign(jobj, key=self._private_key, alg=self._alg, **kwargs).json_dumps(indent=2)

    async def _signed_request(
        self,
        obj: typing.Optional[josepy.JSONDeSerializable],
        url: str,
        post_as_get: bool = True,
        network_retries: int = 0,
    ):
        """Sends a JWS signed POST request, retrying transient network failures with exponential backoff.

        Only idempotent requests should pass *network_retries*.
        """
        delay = self.NETWORK_RETRY_DELAY
        attempt = 0

        while True:
            try:
                return await self._nonce_retrying_request(obj, url, post_as_get)
            except (ClientConnectionError, ClientResponseError, asyncio.TimeoutError) as e:
                if isinstance(e, ClientResponseError) and e.status < 500:
                    raise
                if attempt >= network_retries:
                    raise

                attempt += 1
                logger.warning("Request to %s failed (%s), retry %d/%d in %.1fs", url, e, attempt, network_retries, delay)
                await asyncio.sleep(delay)
                delay *= 2

    async def _nonce_retrying_request(
        self, obj: typing.Optional[josepy.JSONDeSerializable], url: str, post_as_get: bool
    ):
        payload = self._wrap_in_jws(obj, await self._get_nonce(), url, post_as_get)
        try:
            return await self._make_request(payload, url)
        except acme.messages.Error as e:
            if e.code != "badNonce":
                raise

        # A rejected nonce is retried exactly once, with a nonce that is fetched fresh.
        logger.debug("Nonce rejected by %s, retrying with a fresh nonce", url)
        payload = self._wrap_in_jws(obj, await self._fetch_nonce(), url, post_as_get)
        return await self._make_request(payload, url)

    async def _make_request(self, payload: str, url: str):
        async with self._session.post(
            url,
            data=payload,
            headers={"Content-Type": "application/jose+json"},
            ssl=self._ssl_context,
        ) as resp:
            if "Replay-Nonce" in resp.headers:
                self._nonces.add(resp.headers["Replay-Nonce"])

            if resp.content_type == "application/problem+json":
                error = acme.messages.Error.from_json(await resp.json(content_type=None))
                logger.debug("Problem from %s: %s", url, error)
                if error.code == "rateLimited":
                    raise RateLimited(error, parse_retry_after(resp.headers.get("Retry-After")))
                raise error
            elif resp.status < 200 or resp.status >= 300:
                raise ClientResponseError(resp.request_info, resp.history, status=resp.status, message=resp.reason)
            elif resp.content_type == "application/json":
                data = await resp.json()
            else:
                data = await resp.text()

            logger.debug(data)
            return resp, data
