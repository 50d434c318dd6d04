"""CertificateManager: TLS certificates via certbot, gated on DNS readiness."""

import logging
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from hostwright.errors import DNSNotReadyError, IssuanceError, PreconditionError, RemoteCommandError
from hostwright.services.base import HostManager
from hostwright.services.dns import DnsResolver

logger = logging.getLogger(__name__)

PUBLIC_IP_CMD = "curl -4 -fsS --max-time 10 https://api.ipify.org"


@dataclass(frozen=True)
class CertPaths:
    fullchain: str
    privkey: str


class CertbotClient:
    """The external ACME collaborator: certbot on the target host, webroot mode."""

    def __init__(self, executor):
        self.executor = executor

    async def obtain(self, domain, webroot, email=None):
        contact = f"--email {shlex.quote(email)}" if email else "--register-unsafely-without-email"
        await self.executor.run(
            f"certbot certonly --webroot -w {shlex.quote(webroot)} -d {shlex.quote(domain)}"
            f" --cert-name {shlex.quote(domain)} --non-interactive --agree-tos {contact} --keep-until-expiring",
            timeout=300,
        )

    async def renew(self, domain):
        await self.executor.run(
            f"certbot renew --cert-name {shlex.quote(domain)} --non-interactive --no-random-sleep-on-renew",
            timeout=300,
        )


class CertificateManager(HostManager):
    """Issues and renews certificates for a domain served by this host.

    Args:
        executor: transport to the target host.
        settings: EngineSettings (cert_root, webroot, renew_before_days).
        resolver: DnsResolver used for the readiness check.
        host_address: the host's public IPv4 address; looked up on the host
            when not given.
        acme: ACME collaborator; defaults to certbot on the host.
        email: ACME account contact; registration is anonymous without it.
    """

    def __init__(self, executor, settings, resolver=None, host_address=None, acme=None, email=None):
        super().__init__(executor, settings)
        self.email = email
        self.resolver = resolver or DnsResolver(settings.dns_resolver_url)
        self.host_address = host_address
        self._acme = acme

    @property
    def acme(self):
        # Follows bind() so certbot output is recorded with the step
        return self._acme or CertbotClient(self.executor)

    def paths(self, domain) -> CertPaths:
        live = f"{self.settings.cert_root}/{domain}"
        return CertPaths(fullchain=f"{live}/fullchain.pem", privkey=f"{live}/privkey.pem")

    async def public_address(self) -> str:
        if self.host_address is None:
            result = await self.executor.run(PUBLIC_IP_CMD)
            self.host_address = result.stdout.strip()
        return self.host_address

    async def check_dns(self, domain):
        """Raise DNSNotReadyError unless *domain* resolves to this host."""
        expected = await self.public_address()
        try:
            addresses = await self.resolver.resolve_a(domain)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise PreconditionError(f"Could not confirm DNS for {domain}", expected=expected, diagnostic=str(e)) from e
        if expected not in addresses:
            raise DNSNotReadyError(
                f"{domain} does not resolve to this host yet; certificate issuance deferred",
                expected=expected,
                observed=", ".join(addresses) or "no A records",
            )

    async def issue(self, domain) -> CertPaths:
        """Obtain a certificate for *domain* once DNS points here.

        The DNS check runs first so an unpropagated record never costs an
        ACME attempt (and rate-limit quota).
        """
        await self.check_dns(domain)
        paths = self.paths(domain)
        logger.info(f"  Requesting certificate for {domain}...")
        try:
            await self.acme.obtain(domain, self.settings.webroot, self.email)
        except RemoteCommandError as e:
            raise IssuanceError(f"certbot could not issue a certificate for {domain}", diagnostic=e.stderr) from e
        for path in (paths.fullchain, paths.privkey):
            if not await self.executor.file_exists(path):
                raise IssuanceError(f"certbot reported success but {path} is missing")
        return paths

    async def expiry(self, domain) -> datetime | None:
        result = await self.executor.run(
            f"openssl x509 -enddate -noout -in {shlex.quote(self.paths(domain).fullchain)}", check=False
        )
        if not result.ok or "=" not in result.stdout:
            return None
        # notAfter=Jan  1 00:00:00 2027 GMT
        value = result.stdout.strip().split("=", 1)[1]
        return datetime.strptime(value, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)

    async def renew(self, domain) -> bool:
        """Renew *domain*'s certificate if it is close to expiry.

        Safe to call speculatively: returns False without touching anything
        when there is no certificate or it has ample validity left.
        """
        expires = await self.expiry(domain)
        if expires is None:
            logger.info(f"No certificate for {domain}; nothing to renew")
            return False
        remaining = expires - datetime.now(timezone.utc)
        if remaining > timedelta(days=self.settings.renew_before_days):
            logger.info(f"Certificate for {domain} valid for {remaining.days} more days; not renewing")
            return False
        logger.info(f"Certificate for {domain} expires in {remaining.days} days; renewing")
        try:
            await self.acme.renew(domain)
        except RemoteCommandError as e:
            raise IssuanceError(f"certbot could not renew {domain}", diagnostic=e.stderr) from e
        return True
