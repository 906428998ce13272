import enum

import acme.messages
import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization

"""ACME message types that are (de-)serialized by the client itself instead of the *acme* library."""

STATUS_EXPIRED = acme.messages.Status("expired")
"""Authorizations may expire, which the *acme* library does not know as a status."""


def is_valid(obj) -> bool:
    return obj.status == acme.messages.STATUS_VALID


def is_pending(obj) -> bool:
    return obj.status in (acme.messages.STATUS_PENDING, acme.messages.STATUS_PROCESSING)


def is_failed(obj) -> bool:
    """Objects in these states can never become valid again."""
    return obj.status in (
        acme.messages.STATUS_INVALID,
        acme.messages.STATUS_DEACTIVATED,
        acme.messages.STATUS_REVOKED,
        STATUS_EXPIRED,
    )


class ChallengeType(str, enum.Enum):
    """The challenge types defined by RFC 8555 and RFC 8737.

    Subclassing :class:`str` lets members compare equal to the type strings sent by the CA.
    """

    DNS_01 = "dns-01"
    """See `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_"""
    HTTP_01 = "http-01"
    """See `8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_"""
    TLS_ALPN_01 = "tls-alpn-01"
    """See `RFC 8737 <https://tools.ietf.org/html/rfc8737>`_"""


class RevocationReason(enum.Enum):
    """Certificate revocation reasons.

    Defined in `5.3.1. Reason Code <https://tools.ietf.org/html/rfc5280#section-5.3.1>`_ of RFC 5280.
    """

    unspecified = 0
    keyCompromise = 1
    cACompromise = 2
    affiliationChanged = 3
    superseded = 4
    cessationOfOperation = 5
    certificateHold = 6
    # value 7 is unused
    removeFromCRL = 8
    privilegeWithdrawn = 9
    aACompromise = 10


def encode_cert(cert: x509.Certificate) -> str:
    return josepy.encode_b64jose(cert.public_bytes(encoding=serialization.Encoding.DER))


def decode_cert(b64der: str) -> x509.Certificate:
    return x509.load_der_x509_certificate(josepy.decode_b64jose(b64der))


def encode_csr(csr: x509.CertificateSigningRequest) -> str:
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der: str) -> x509.CertificateSigningRequest:
    return x509.load_der_x509_csr(josepy.decode_b64jose(b64der))


class Revocation(josepy.JSONObjectWithFields):
    """Message type for certificate revocation requests."""

    certificate: x509.Certificate = josepy.field("certificate", decoder=decode_cert, encoder=encode_cert)
    """The certificate to be revoked."""
    reason: RevocationReason = josepy.field(
        "reason",
        decoder=RevocationReason,
        encoder=lambda reason: reason.value,
        omitempty=True,
    )
    """The reason for the revocation."""


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for the order finalization request."""

    csr: x509.CertificateSigningRequest = josepy.field("csr", decoder=decode_csr, encoder=encode_csr)
    """The certificate signing request."""
