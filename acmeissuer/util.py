import enum
import re
import typing
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

KEY_FILE_MODE = 0o600

PrivateKey = typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


class KeyType(str, enum.Enum):
    """The supported certificate key types."""

    RSA2048 = "rsa2048"
    RSA3072 = "rsa3072"
    RSA4096 = "rsa4096"
    RSA8192 = "rsa8192"
    EC256 = "ec256"
    EC384 = "ec384"

    @property
    def algorithm(self) -> str:
        return self.value[:-4] if self.value.startswith("rsa") else "ec"

    @property
    def size(self) -> int:
        return int(re.sub(r"^\D+", "", self.value))


def generate_private_key(key_type: typing.Union[KeyType, str] = KeyType.RSA2048) -> PrivateKey:
    """Generates a private key of the given type.

    :param key_type: The key type, e.g. *rsa2048* or *ec256*.
    :raises: :class:`ValueError` If the key type is unknown.
    :return: The generated private key.
    """
    key_type = KeyType(key_type)

    if key_type.algorithm == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=key_type.size)

    curve = getattr(ec, f"SECP{key_type.size}R1")
    return ec.generate_private_key(curve())


def private_key_bytes(private_key: PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def write_private_key(path: Path, private_key: PrivateKey) -> None:
    """Saves a private key to the given path as PEM, readable by the owner only."""
    path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)

    with open(path, "wb") as pem_out:
        pem_out.write(private_key_bytes(private_key))


def generate_rsa_key(path: Path, key_size=2048) -> rsa.RSAPrivateKey:
    """Generates an RSA private key and saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The RSA key size.
    :return: The generated private key.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    write_private_key(path, private_key)
    return private_key


def generate_ec_key(path: Path, key_size=256) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())
    write_private_key(path, private_key)
    return private_key


def load_private_key(data: bytes) -> PrivateKey:
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError("Only RSA and EC private keys are supported")
    return key


def generate_csr(
    names: typing.Sequence[str], private_key: PrivateKey, must_staple: bool = False
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    The first name becomes the common name, all names are requested as subject alternative names.

    :param names: The requested names in the CSR.
    :param private_key: The private key to sign the CSR with.
    :param must_staple: Whether to request the OCSP Must-Staple extension.
    :return: The generated CSR.
    """
    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
    )

    if must_staple:
        builder = builder.add_extension(x509.TLSFeature([x509.TLSFeatureType.status_request]), critical=False)

    return builder.sign(private_key, hashes.SHA256())


def names_of(csr: x509.CertificateSigningRequest, lower: bool = False) -> typing.List[str]:
    """Returns all names contained in the given CSR, the common name first.

    :param csr: The CSR whose names to extract.
    :param lower: True if the names should be returned in lowercase.
    :return: List of the contained identifier strings, without duplicates.
    """
    names = [v.value for v in csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    try:
        names.extend(csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        pass

    names = [name.lower() if lower else name for name in names]
    return list(dict.fromkeys(names))


def pem_split(
    pem: str,
) -> typing.List[typing.Union[x509.CertificateSigningRequest, x509.Certificate, PrivateKey]]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and keys.

    :param pem: The concatenated PEM encoded CSRs and certificates.
    :return: List of all objects found in the PEM string, in order.
    """
    _PEM_TO_CLASS = {
        b"CERTIFICATE": x509.load_pem_x509_certificate,
        b"CERTIFICATE REQUEST": x509.load_pem_x509_csr,
        b"EC PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
        b"RSA PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
        b"PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
    }

    _PEM_RE = re.compile(
        b"-----BEGIN (?P<cls>"
        + b"|".join(_PEM_TO_CLASS.keys())
        + b""")-----"""
        + b"""\r?
.+?\r?
-----END \\1-----\r?\n?""",
        re.DOTALL,
    )

    return [_PEM_TO_CLASS[match.groupdict()["cls"]](match.group(0)) for match in _PEM_RE.finditer(pem.encode())]


def split_chain(pem: str) -> typing.Tuple[str, str]:
    """Splits a PEM certificate chain into the leaf and the remaining issuer certificates.

    :param pem: The chain, leaf first.
    :raises: :class:`ValueError` If the chain contains no certificate.
    :return: The leaf and the issuer chain, both PEM encoded. The issuer chain may be empty.
    """
    certs = [obj for obj in pem_split(pem) if isinstance(obj, x509.Certificate)]
    if not certs:
        raise ValueError("The certificate chain contains no certificate")

    leaf, *issuers = [cert.public_bytes(serialization.Encoding.PEM).decode() for cert in certs]
    return leaf, "".join(issuers)
