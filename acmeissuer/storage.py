import datetime
import json
import logging
import typing
from pathlib import Path

from cryptography import x509

from acmeissuer.client.orchestrator import CertificateResource
from acmeissuer.util import KEY_FILE_MODE

logger = logging.getLogger(__name__)


class CertificateStore:
    """Writes obtained certificates to a directory.

    Each certificate is stored as *<name>.crt* (certificate, bundled if requested), *<name>.issuer.crt*,
    *<name>.key* and *<name>.json* (metadata), where *<name>* is the main domain with
    the wildcard character replaced by an underscore.
    """

    def __init__(self, path: typing.Union[str, Path]):
        self.path = Path(path)

    @staticmethod
    def file_name(domain: str) -> str:
        return domain.strip().lower().replace("*", "_")

    def _file(self, domain: str, suffix: str) -> Path:
        return self.path / f"{self.file_name(domain)}{suffix}"

    def save(self, resource: CertificateResource) -> None:
        self.path.mkdir(parents=True, exist_ok=True)

        self._file(resource.domain, ".crt").write_text(resource.certificate)
        self._file(resource.domain, ".issuer.crt").write_text(resource.issuer_certificate)

        if resource.private_key is not None:
            key_path = self._file(resource.domain, ".key")
            key_path.touch(KEY_FILE_MODE) if not key_path.exists() else key_path.chmod(KEY_FILE_MODE)
            key_path.write_bytes(resource.private_key)

        metadata = {
            "domain": resource.domain,
            "domains": resource.domains,
            "cert_url": resource.cert_url,
            "saved_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        self._file(resource.domain, ".json").write_text(json.dumps(metadata, indent=2))

        logger.info("Saved certificate of %s to %s", resource.domain, self.path)

    def exists(self, domain: str) -> bool:
        return self._file(domain, ".crt").exists()

    def load_certificate(self, domain: str) -> x509.Certificate:
        """Loads the stored leaf certificate of a domain.

        :raises: :class:`FileNotFoundError` If no certificate is stored for the domain.
        """
        return x509.load_pem_x509_certificate(self._file(domain, ".crt").read_bytes())

    def load_private_key(self, domain: str) -> typing.Optional[bytes]:
        key_path = self._file(domain, ".key")
        return key_path.read_bytes() if key_path.exists() else None

    def load_metadata(self, domain: str) -> typing.Dict[str, typing.Any]:
        """Loads the stored metadata of a domain.

        :raises: :class:`FileNotFoundError` If no metadata is stored for the domain.
        """
        return json.loads(self._file(domain, ".json").read_text())
