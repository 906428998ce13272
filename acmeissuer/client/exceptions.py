import typing

import acme.messages


class AcmeClientException(Exception):
    """General ACME client exception."""

    pass


class CouldNotCompleteChallenge(AcmeClientException):
    """Exception that is raised if completion of a specific challenge failed."""

    def __init__(self, challenge, error: acme.messages.Error = None, *args):
        super().__init__(*args)
        self.challenge: acme.messages.ChallengeBody = challenge
        """The challenge whose completion was unsuccessful."""
        self.error = error if error is not None else getattr(challenge, "error", None)
        """The problem the CA reported for the challenge, if any."""

    def __str__(self):
        if self.error is not None:
            return f"Could not complete challenge {self.challenge.chall.typ}: {self.error}"
        return f"Could not complete challenge: {self.challenge}"


class PollingException(AcmeClientException):
    """Exception that is used internally to communicate polling timeouts or errors."""

    def __init__(self, obj, *args):
        super().__init__(*args)
        self.obj = obj


class RateLimited(AcmeClientException):
    """Raised when the CA answers with the *rateLimited* problem type."""

    def __init__(self, error: acme.messages.Error, retry_after: typing.Optional[float] = None):
        super().__init__(str(error))
        self.error = error
        """The problem document returned by the CA."""
        self.retry_after = retry_after
        """Seconds after which the request may be retried, if the CA said so."""

    def __str__(self):
        if self.retry_after is not None:
            return f"{self.error} (retry after {self.retry_after:.0f}s)"
        return str(self.error)


class ProviderError(AcmeClientException):
    """Raised when a DNS provider failed to create or remove a challenge record."""

    def __init__(self, domain: str, provider: str, cause: BaseException):
        super().__init__(domain, provider, cause)
        self.domain = domain
        self.provider = provider
        self.cause = cause

    def __str__(self):
        return f"provider {self.provider} failed for {self.domain}: {self.cause}"


class AuthorizationError(AcmeClientException):
    """Describes why the authorization of a single domain failed.

    :attr:`stage` names the step of the authorization flow that failed, see
    :class:`~acmeissuer.client.authorization.Stage`.
    """

    def __init__(self, domain: str, stage: str, cause: BaseException):
        super().__init__(domain, stage, cause)
        self.domain = domain
        self.stage = stage
        self.cause = cause

    def __str__(self):
        stage = getattr(self.stage, "value", self.stage)
        return f"{self.domain} [{stage}]: {self.cause}"


class ObtainError(AcmeClientException):
    """Raised when a certificate could not be obtained.

    Carries one :class:`AuthorizationError` per failed domain.
    """

    def __init__(self, failures: typing.Dict[str, AuthorizationError]):
        super().__init__(failures)
        self.failures = failures

    def __str__(self):
        lines = [str(failure) for _, failure in sorted(self.failures.items())]
        return "error: one or more domains had a problem:\n" + "\n".join(lines)
