"""Managers for the host resources a deployment owns."""

from hostwright.services.certs import CertbotClient, CertificateManager, CertPaths
from hostwright.services.dns import DnsResolver
from hostwright.services.nginx import ReverseProxyManager, render_site
from hostwright.services.systemd import ServiceStatus, ServiceUnitManager, render_unit, service_status

__all__ = [
    "CertPaths",
    "CertbotClient",
    "CertificateManager",
    "DnsResolver",
    "ReverseProxyManager",
    "ServiceStatus",
    "ServiceUnitManager",
    "render_site",
    "render_unit",
    "service_status",
]
