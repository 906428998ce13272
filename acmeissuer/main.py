import asyncio
import datetime
import logging
import logging.config
import typing
from pathlib import Path

import acme.messages
import click
import pydantic
import yaml
from cryptography import x509
from pydantic import Field
from pydantic_settings import BaseSettings

from acmeissuer import util
from acmeissuer.client import AcmeClient, DNS01Solver, ObtainError, OrderOrchestrator, PollingPolicy, SolverManager
from acmeissuer.client.exceptions import AcmeClientException
from acmeissuer.client.messages import RevocationReason
from acmeissuer.client.orchestrator import CertificateResource, sanitize_domains
from acmeissuer.dns import DNSClient, PropagationChecker, ZoneCache, ZoneResolver
from acmeissuer.providers import Provider, ProviderRegistry, default_registry
from acmeissuer.providers.cloudflare import CloudflareProvider
from acmeissuer.providers.lexicon import LexiconProvider
from acmeissuer.providers.rfc2136 import RFC2136Provider
from acmeissuer.storage import CertificateStore

logger = logging.getLogger(__name__)

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"

ProviderConfig = typing.Annotated[
    typing.Union[RFC2136Provider.Config, CloudflareProvider.Config, LexiconProvider.Config],
    Field(discriminator="type"),
]


class ContactConfig(BaseSettings, extra="forbid"):
    email: typing.Optional[str] = None
    phone: typing.Optional[str] = None


class EABConfig(BaseSettings, extra="forbid"):
    kid: str
    hmac_key: str


class ClientConfig(BaseSettings, extra="forbid"):
    directory: str = LETSENCRYPT_DIRECTORY
    """URL of the CA's directory."""
    private_key: Path = Path("account.key")
    """Path of the account key. Generated if it does not exist."""
    contact: ContactConfig = ContactConfig()
    eab: typing.Optional[EABConfig] = None
    server_cert: typing.Optional[Path] = None
    """CA bundle to trust in addition to the system's, e.g. for test CAs."""


class DNSConfig(BaseSettings, extra="forbid"):
    resolvers: typing.List[str] = []
    """Recursive nameservers. Defaults to the system's."""
    timeout: float = DNSClient.DEFAULT_TIMEOUT
    tcp_only: bool = False
    cache_zones: bool = False


class PropagationConfig(BaseSettings, extra="forbid"):
    disable_authoritative: bool = False
    require_recursive: bool = False
    wait: typing.Optional[float] = None
    skip_check: bool = False

    @pydantic.model_validator(mode="after")
    def _skip_requires_wait(self):
        if self.skip_check and self.wait is None:
            raise ValueError("skip_check requires wait to be set")
        return self


class PollingConfig(BaseSettings, extra="forbid"):
    delay: float
    max_delay: float
    timeout: float

    def policy(self) -> PollingPolicy:
        return PollingPolicy(delay=self.delay, max_delay=self.max_delay, timeout=self.timeout)


class PollingSection(BaseSettings, extra="forbid"):
    authorization: PollingConfig = PollingConfig(delay=5.0, max_delay=50.0, timeout=500.0)
    order: PollingConfig = PollingConfig(delay=1.0, max_delay=10.0, timeout=180.0)


class ProvidersConfig(BaseSettings, extra="forbid"):
    default: typing.Optional[ProviderConfig] = None
    domains: typing.Dict[str, ProviderConfig] = {}
    """Providers for specific domains and their subdomains."""


class Config(BaseSettings, extra="forbid"):
    client: ClientConfig = ClientConfig()
    key_type: util.KeyType = util.KeyType.RSA2048
    dns: DNSConfig = DNSConfig()
    propagation: PropagationConfig = PropagationConfig()
    providers: ProvidersConfig = ProvidersConfig()
    polling: PollingSection = PollingSection()
    always_deactivate_authorizations: bool = False
    """Deactivate the authorizations of an order after issuance, not only when it fails."""
    output: Path = Path("certificates")
    logging: typing.Any = None


def load_config(config_file: typing.Optional[str]) -> Config:
    if not config_file:
        return Config()

    with open(config_file) as stream:
        config = yaml.safe_load(stream) or {}

    return Config.model_validate(config)


def configure_logging(config: Config) -> None:
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def make_client(config: Config) -> AcmeClient:
    eab = config.client.eab
    return AcmeClient(
        directory_url=config.client.directory,
        private_key=config.client.private_key,
        contact=config.client.contact.model_dump(exclude_none=True),
        server_cert=str(config.client.server_cert) if config.client.server_cert else None,
        kid=eab.kid if eab else None,
        hmac_key=eab.hmac_key if eab else None,
    )


async def issue(
    config: Config,
    registry: ProviderRegistry,
    domains: typing.Sequence[str],
    csr: x509.CertificateSigningRequest = None,
    bundle: bool = True,
    must_staple: bool = False,
) -> CertificateResource:
    """Wires up the DNS stack, the providers and the client and obtains a certificate.

    :raises: :class:`~acmeissuer.client.exceptions.ObtainError` If the certificate could not be obtained.
    """
    dns_client = DNSClient(config.dns.resolvers or None, timeout=config.dns.timeout, tcp_only=config.dns.tcp_only)
    zone_resolver = ZoneResolver(dns_client, ZoneCache() if config.dns.cache_zones else None)
    checker = PropagationChecker(
        dns_client,
        zone_resolver,
        require_authoritative=not config.propagation.disable_authoritative,
        require_recursive=config.propagation.require_recursive,
        wait=config.propagation.wait,
        skip_check=config.propagation.skip_check,
    )

    if config.providers.default is None and not config.providers.domains:
        raise click.UsageError("No DNS provider configured, use --dns or the providers section of the config file")

    providers: typing.List[Provider] = []
    solvers = SolverManager()
    client = make_client(config)
    try:
        if config.providers.default is not None:
            provider = registry.create(config.providers.default, zone_resolver=zone_resolver)
            providers.append(provider)
            solvers.register_challenge_solver(DNS01Solver(provider, checker, zone_resolver))

        for domain, provider_cfg in config.providers.domains.items():
            provider = registry.create(provider_cfg, zone_resolver=zone_resolver)
            providers.append(provider)
            solvers.register_challenge_solver(DNS01Solver(provider, checker, zone_resolver), domains=[domain])

        await client.start()
        orchestrator = OrderOrchestrator(
            client,
            solvers,
            key_type=config.key_type,
            authorization_polling=config.polling.authorization.policy(),
            order_polling=config.polling.order.policy(),
            always_deactivate=config.always_deactivate_authorizations,
        )

        if csr is not None:
            return await orchestrator.obtain_for_csr(csr, bundle=bundle)
        return await orchestrator.obtain(domains, bundle=bundle, must_staple=must_staple)
    finally:
        await client.close()
        for provider in providers:
            await provider.close()


async def revoke_certificate(config: Config, certificate: x509.Certificate, reason: RevocationReason = None) -> bool:
    client = make_client(config)
    try:
        await client.start()
        return await client.certificate_revoke(certificate, reason)
    finally:
        await client.close()


def apply_options(
    config: Config,
    registry: ProviderRegistry,
    *,
    server: str = None,
    email: str = None,
    account_key: str = None,
    dns: str = None,
    key_type: str = None,
    dns_resolvers: typing.Sequence[str] = (),
    dns_timeout: float = None,
    propagation_disable_ans: bool = False,
    propagation_rns: bool = False,
    propagation_wait: float = None,
    path: str = None,
    always_deactivate_authorizations: bool = False,
) -> Config:
    """Overrides the config with the command line options that were given."""
    if server:
        config.client.directory = server
    if email:
        config.client.contact.email = email
    if account_key:
        config.client.private_key = Path(account_key)
    if dns:
        # Credentials come from the environment, e.g. CLOUDFLARE_API_TOKEN.
        config.providers.default = registry.get_plugin(dns).Config()
    if key_type:
        config.key_type = util.KeyType(key_type)
    if dns_resolvers:
        config.dns.resolvers = list(dns_resolvers)
    if dns_timeout:
        config.dns.timeout = dns_timeout
    if propagation_disable_ans:
        config.propagation.disable_authoritative = True
    if propagation_rns:
        config.propagation.require_recursive = True
    if propagation_wait is not None:
        config.propagation.wait = propagation_wait
    if path:
        config.output = Path(path)
    if always_deactivate_authorizations:
        config.always_deactivate_authorizations = True

    return config


def ensure_account_key(path: Path) -> None:
    if not path.exists():
        click.echo(f"No account key found at {path}, generating one.")
        path.parent.mkdir(parents=True, exist_ok=True)
        util.generate_ec_key(path)


def common_options(f):
    options = [
        click.option("--config-file", envvar="ACMEISSUER_CONFIG_FILE", type=click.Path(exists=True, dir_okay=False)),
        click.option("--domains", "-d", multiple=True, help="Add a domain to the certificate, the first one is the main domain."),
        click.option("--server", "-s", help="URL of the CA's directory."),
        click.option("--email", "-m", help="Contact e-mail of the account."),
        click.option("--account-key", type=click.Path(dir_okay=False), help="Path of the account key."),
        click.option("--dns", help="DNS provider to solve dns-01 challenges with."),
        click.option("--key-type", "-k", type=click.Choice([k.value for k in util.KeyType])),
        click.option("--dns-resolvers", multiple=True, help="Recursive nameserver to use, host[:port]."),
        click.option("--dns-timeout", type=float, help="Timeout of a single DNS query in seconds."),
        click.option("--propagation-disable-ans", is_flag=True, help="Do not check the authoritative nameservers."),
        click.option("--propagation-rns", is_flag=True, help="Also check the recursive nameservers."),
        click.option("--propagation-wait", type=float, help="Wait this many seconds before checking propagation."),
        click.option("--csr", type=click.Path(exists=True, dir_okay=False), help="Obtain the certificate for this CSR."),
        click.option("--no-bundle", is_flag=True, help="Do not append the issuer chain to the certificate."),
        click.option("--must-staple", is_flag=True, help="Request the OCSP Must-Staple extension."),
        click.option("--path", type=click.Path(file_okay=False), help="Directory the certificates are stored in."),
        click.option(
            "--always-deactivate-authorizations",
            is_flag=True,
            help="Deactivate the authorizations after issuance, not only when an authorization fails.",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _prepare(ctx, params) -> typing.Tuple[Config, typing.List[str], typing.Optional[x509.CertificateSigningRequest]]:
    registry: ProviderRegistry = ctx.obj["registry"]

    try:
        config = load_config(params.pop("config_file"))
        csr_path = params.pop("csr")
        domains = sanitize_domains(params.pop("domains"))
        params.pop("no_bundle")
        params.pop("must_staple")
        config = apply_options(config, registry, **params)
    except (pydantic.ValidationError, ValueError) as e:
        raise click.UsageError(str(e))

    configure_logging(config)

    csr = None
    if csr_path:
        csr = x509.load_pem_x509_csr(Path(csr_path).read_bytes())
        domains = sanitize_domains(util.names_of(csr))

    if not domains:
        raise click.UsageError("Specify at least one domain with --domains or a CSR with --csr")

    ensure_account_key(config.client.private_key)
    return config, domains, csr


def _obtain_and_save(ctx, config, domains, csr, bundle, must_staple) -> CertificateResource:
    try:
        resource = asyncio.run(issue(config, ctx.obj["registry"], domains, csr, bundle=bundle, must_staple=must_staple))
    except ObtainError as e:
        raise click.ClickException(str(e))
    except (AcmeClientException, acme.messages.Error, ValueError) as e:
        raise click.ClickException(f"Could not obtain a certificate: {e}")

    CertificateStore(config.output).save(resource)
    return resource


@click.group()
@click.pass_context
def main(ctx):
    """Obtains certificates from ACME CAs using dns-01 challenges."""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("registry", default_registry())


@main.command()
@click.pass_context
def providers(ctx):
    """Lists the available DNS providers and their respective config strings."""
    registry: ProviderRegistry = ctx.obj["registry"]
    click.echo(
        f"DNS providers: {', '.join(f'{cls.__name__} ({name})' for name, cls in sorted(registry.config_mapping().items()))}"
    )


@main.command()
@click.argument("account-key-file", type=click.Path())
@click.option(
    "--key-type",
    "-k",
    type=click.Choice(["rsa", "ec"], case_sensitive=False),
    default="rsa",
    show_default=True,
)
def generate_account_key(account_key_file, key_type):
    """Generates an account key for the ACME client."""
    click.echo(f"Generating client key of type {key_type} at {account_key_file}.")
    account_key_file = Path(account_key_file)
    if key_type == "rsa":
        util.generate_rsa_key(account_key_file)
    else:
        util.generate_ec_key(account_key_file)


@main.command()
@common_options
@click.pass_context
def run(ctx, **params):
    """Registers an account if needed and obtains a certificate."""
    bundle = not params["no_bundle"]
    must_staple = params["must_staple"]
    config, domains, csr = _prepare(ctx, params)

    resource = _obtain_and_save(ctx, config, domains, csr, bundle, must_staple)
    click.echo(f"Obtained certificate for {', '.join(resource.domains)}, saved to {config.output}")


@main.command()
@common_options
@click.option("--days", type=int, default=30, show_default=True, help="Renew if the certificate expires within this many days.")
@click.pass_context
def renew(ctx, days, **params):
    """Obtains a new certificate if the stored one expires soon."""
    bundle = not params["no_bundle"]
    must_staple = params["must_staple"]
    config, domains, csr = _prepare(ctx, params)

    store = CertificateStore(config.output)
    if store.exists(domains[0]):
        certificate = store.load_certificate(domains[0])
        remaining = certificate.not_valid_after_utc - datetime.datetime.now(datetime.timezone.utc)
        if remaining > datetime.timedelta(days=days):
            click.echo(f"The certificate of {domains[0]} expires in {remaining.days} days, no need to renew.")
            return
    else:
        click.echo(f"No certificate stored for {domains[0]}, obtaining a new one.")

    resource = _obtain_and_save(ctx, config, domains, csr, bundle, must_staple)
    click.echo(f"Renewed certificate for {', '.join(resource.domains)}, saved to {config.output}")


@main.command()
@click.option("--config-file", envvar="ACMEISSUER_CONFIG_FILE", type=click.Path(exists=True, dir_okay=False))
@click.option("--domains", "-d", required=True, help="Main domain of the certificate to revoke.")
@click.option("--server", "-s")
@click.option("--account-key", type=click.Path(exists=True, dir_okay=False))
@click.option("--path", type=click.Path(file_okay=False))
@click.option("--reason", type=click.Choice([r.name for r in RevocationReason]))
@click.pass_context
def revoke(ctx, config_file, domains, server, account_key, path, reason):
    """Revokes a stored certificate."""
    try:
        config = load_config(config_file)
    except (pydantic.ValidationError, ValueError) as e:
        raise click.UsageError(str(e))

    config = apply_options(config, ctx.obj["registry"], server=server, account_key=account_key, path=path)
    configure_logging(config)

    store = CertificateStore(config.output)
    try:
        certificate = store.load_certificate(domains)
    except FileNotFoundError:
        raise click.ClickException(f"No certificate stored for {domains} in {config.output}")

    try:
        revoked = asyncio.run(revoke_certificate(config, certificate, RevocationReason[reason] if reason else None))
    except (AcmeClientException, acme.messages.Error) as e:
        raise click.ClickException(f"Could not revoke the certificate: {e}")

    if not revoked:
        raise click.ClickException(f"The CA did not confirm the revocation of {domains}")

    click.echo(f"Revoked the certificate of {domains}.")


if __name__ == "__main__":
    main()
