"""Public DNS lookups over DNS-over-HTTPS.

Resolving through a public DoH endpoint, rather than the local resolver,
answers the question the ACME server will ask: does the world see this
domain pointing at the host yet?
"""

import logging

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RESOLVER_URL = "https://cloudflare-dns.com/dns-query"

# RFC 1035 record type and response codes used in the JSON API
TYPE_A = 1
RCODE_NXDOMAIN = 3


class DnsResolver:
    """Resolve A records through a JSON DoH endpoint (Cloudflare/Google format)."""

    def __init__(self, url=DEFAULT_RESOLVER_URL, timeout=10, transport=None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def resolve_a(self, domain) -> list[str]:
        """Return the IPv4 addresses *domain* currently resolves to.

        Raises:
            httpx.HTTPError: the resolver could not be queried, or its reply
                was not a DoH JSON answer (httpx.DecodingError).
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.get(
                self.url,
                params={"name": domain, "type": "A"},
                headers={"Accept": "application/dns-json"},
            )
        resp.raise_for_status()
        try:
            body = resp.json()
            if body.get("Status") == RCODE_NXDOMAIN:
                logger.debug(f"{domain}: NXDOMAIN")
                return []
            addresses = [answer["data"] for answer in body.get("Answer", []) if answer.get("type") == TYPE_A]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # Captive portals and proxy error pages answer 200 with HTML
            raise httpx.DecodingError(
                f"Unexpected reply from {self.url}: {resp.text[:200]!r}", request=resp.request
            ) from e
        logger.debug(f"{domain} -> {', '.join(addresses) or 'no A records'}")
        return addresses
