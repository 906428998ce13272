import asyncio
import dataclasses
import enum
import logging
import typing

import acme.messages

from acmeissuer.client.challenge_solver import ChallengeSolver
from acmeissuer.client.client import AUTHORIZATION_POLLING, AcmeClient, PollingPolicy
from acmeissuer.client.exceptions import AcmeClientException, AuthorizationError, CouldNotCompleteChallenge
from acmeissuer.client.messages import is_failed, is_valid
from acmeissuer.providers.base import SequentialPolicy

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_GRACE = 30.0
"""Time in seconds a cleanup may take, also after the worker was cancelled."""


class Stage(str, enum.Enum):
    """The steps an authorization passes through.

    Subclassing :class:`str` lets the stages be logged and serialized as their values.
    """

    START = "start"
    PRESENTING = "presenting"
    PROPAGATING = "propagating"
    VALIDATING = "cs-validating"
    VALID = "valid"
    INVALID = "invalid"
    CLEANED_UP = "cleaned-up"
    FINALIZING = "finalizing"
    """Used for failures after all authorizations succeeded, i.e. finalization or download."""


@dataclasses.dataclass
class AuthorizationResult:
    domain: str
    stage: Stage
    """The final stage, :attr:`Stage.VALID` or :attr:`Stage.INVALID`."""
    error: typing.Optional[AuthorizationError] = None
    cleanup_error: typing.Optional[BaseException] = None
    """Set if the record could not be removed. Does not affect the outcome."""
    skipped: bool = False
    """Set if the CA considered the authorization valid already."""
    cleaned_up: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class AuthorizationWorker:
    """Drives a single authorization to a final state.

    The worker presents the challenge, waits for propagation, asks the CA to validate
    and polls the authorization. Failures are returned as part of the :class:`AuthorizationResult`,
    only cancellation is raised. Once the challenge was presented, the cleanup runs exactly once,
    also if the worker is cancelled.
    """

    _cleanups: typing.Set[asyncio.Task] = set()

    def __init__(
        self,
        client: AcmeClient,
        authorization: acme.messages.AuthorizationResource,
        solver: ChallengeSolver,
        challenge: acme.messages.ChallengeBody,
        *,
        polling: PollingPolicy = AUTHORIZATION_POLLING,
        cleanup_grace: float = DEFAULT_CLEANUP_GRACE,
    ):
        self.client = client
        self.authorization = authorization
        self.solver = solver
        self.challenge = challenge
        self.polling = polling
        self.cleanup_grace = cleanup_grace

        self.domain = authorization.body.identifier.value
        if authorization.body.wildcard:
            self.domain = f"*.{self.domain}"

        self.stage = Stage.START
        self._attempted = False
        self._presented = False

    @property
    def sequential(self) -> typing.Optional[SequentialPolicy]:
        return self.solver.sequential

    @property
    def attempted(self) -> bool:
        """Whether the solver was asked to present the challenge, successfully or not."""
        return self._attempted

    def _transition(self, stage: Stage):
        logger.debug("[%s] %s -> %s", self.domain, self.stage.value, stage.value)
        self.stage = stage

    async def run(self) -> AuthorizationResult:
        """Runs the authorization flow.

        :raises: :class:`asyncio.CancelledError` If the worker was cancelled. Nothing else is raised.
        :return: The outcome.
        """
        if is_valid(self.authorization.body):
            logger.info("[%s] Authorization is already valid, skipping", self.domain)
            self._transition(Stage.VALID)
            return AuthorizationResult(self.domain, Stage.VALID, skipped=True)

        if is_failed(self.authorization.body):
            status = self.authorization.body.status.name
            logger.error("[%s] Authorization is %s, not presenting the challenge", self.domain, status)
            error = AuthorizationError(self.domain, self.stage, AcmeClientException(f"authorization is {status}"))
            self._transition(Stage.INVALID)
            return AuthorizationResult(self.domain, Stage.INVALID, error=error)

        key_auth = self.client.key_authorization(self.challenge)
        result = None
        try:
            result = await self._solve(key_auth)
        finally:
            if self._presented:
                cleanup_error = await self._cleanup(key_auth)
                if result is not None:
                    result.cleanup_error = cleanup_error
                    result.cleaned_up = cleanup_error is None

        return result

    async def _solve(self, key_auth: str) -> AuthorizationResult:
        try:
            self._transition(Stage.PRESENTING)
            self._attempted = True
            await self.solver.complete_challenge(self.domain, self.challenge, key_auth)
            self._presented = True

            self._transition(Stage.PROPAGATING)
            await self.solver.await_propagation(self.domain, self.challenge, key_auth)

            self._transition(Stage.VALIDATING)
            await self._validate()
        except Exception as e:
            logger.error("[%s] Authorization failed while %s: %s", self.domain, self.stage.value, e)
            error = AuthorizationError(self.domain, self.stage, e)
            self._transition(Stage.INVALID)
            return AuthorizationResult(self.domain, Stage.INVALID, error=error)

        logger.info("[%s] The server validated our request", self.domain)
        self._transition(Stage.VALID)
        return AuthorizationResult(self.domain, Stage.VALID)

    async def _validate(self):
        challenge = await self.client.challenge_validate(self.challenge.uri)
        if challenge.status == acme.messages.STATUS_INVALID:
            raise CouldNotCompleteChallenge(challenge)

        authorization = await self.client.authorization_poll(self.authorization.uri, self.polling)

        if not is_valid(authorization.body):
            failed = next(
                (c for c in authorization.body.challenges if c.uri == self.challenge.uri),
                challenge,
            )
            raise CouldNotCompleteChallenge(failed)

    async def _cleanup(self, key_auth: str) -> typing.Optional[BaseException]:
        cleanup = asyncio.ensure_future(
            asyncio.wait_for(
                self.solver.cleanup_challenge(self.domain, self.challenge, key_auth),
                self.cleanup_grace,
            )
        )
        # The cleanup must survive the cancellation of the worker, so keep a reference to it.
        self._cleanups.add(cleanup)
        cleanup.add_done_callback(self._cleanups.discard)

        try:
            await asyncio.shield(cleanup)
        except asyncio.TimeoutError as e:
            logger.warning("[%s] Cleanup did not finish within %.1fs", self.domain, self.cleanup_grace)
            return e
        except Exception as e:
            logger.warning("[%s] Error cleaning up: %s", self.domain, e)
            return e

        self._transition(Stage.CLEANED_UP)
        return None


async def _run_sequentially(workers: typing.List[AuthorizationWorker]) -> typing.List[AuthorizationResult]:
    loop = asyncio.get_running_loop()
    results = []
    last_start = None

    for worker in workers:
        if last_start is not None:
            delay = last_start + worker.sequential.interval - loop.time()
            if delay > 0:
                logger.info("[%s] Sequence mode: waiting %.1fs", worker.domain, delay)
                await asyncio.sleep(delay)

        start = loop.time()
        results.append(await worker.run())
        # Workers that never reached the provider do not count towards its rate limit.
        if worker.attempted:
            last_start = start

    return results


async def schedule_workers(workers: typing.Sequence[AuthorizationWorker]) -> typing.List[AuthorizationResult]:
    """Runs the workers and collects their results.

    Workers whose solver requests sequential solving are grouped by solver and run one at a time,
    the next one starting no earlier than the policy's interval after the previous worker that
    presented a challenge. Workers skipped because their authorization was already final are not spaced.
    All other workers, and all groups, run concurrently.

    :param workers: The workers to run.
    :return: The results, in the order of *workers*.
    """
    concurrent: typing.List[AuthorizationWorker] = []
    groups: typing.Dict[ChallengeSolver, typing.List[AuthorizationWorker]] = dict()

    for worker in workers:
        if worker.sequential is not None:
            groups.setdefault(worker.solver, []).append(worker)
        else:
            concurrent.append(worker)

    outcome = await asyncio.gather(
        *[worker.run() for worker in concurrent],
        *[_run_sequentially(group) for group in groups.values()],
    )

    results: typing.Dict[int, AuthorizationResult] = dict()
    for worker, result in zip(concurrent, outcome[: len(concurrent)]):
        results[id(worker)] = result
    for group, group_results in zip(groups.values(), outcome[len(concurrent) :]):
        for worker, result in zip(group, group_results):
            results[id(worker)] = result

    return [results[id(worker)] for worker in workers]
