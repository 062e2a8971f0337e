"""Table endpoint addressing.

Decides between virtual-hosted addressing
(``https://<account>.table.core.windows.net/<table>``) and path-style
addressing (``http://127.0.0.1:10002/<account>/<table>``) and builds request
URLs for the primary and secondary locations.
"""

import ipaddress
import re
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

PATH_STYLE_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "host.docker.internal", "ipv4.fiddler"})

PATH_STYLE_PORTS = frozenset(
    list(range(10000, 10005))
    + list(range(10100, 10105))
    + list(range(11000, 11005))
    + list(range(11100, 11105))
)

_TABLE_HOST = re.compile(r"^(?P<account>[\w\-]+)\.table\.(?P<suffix>.+)$", re.IGNORECASE)

SECONDARY_SUFFIX = "-secondary"


def use_path_style(url: str) -> bool:
    """
    Check whether a URL addresses the account in its path.

    True for IPv4 hosts, recognized local and emulator host names, and the
    emulator port ranges.
    """
    parsed = urlsplit(url)
    host = (parsed.hostname or "").lower()
    if host in PATH_STYLE_HOSTS:
        return True
    try:
        if isinstance(ipaddress.ip_address(host), ipaddress.IPv4Address):
            return True
    except ValueError:
        pass
    try:
        port = parsed.port
    except ValueError:
        return False
    return port is not None and port in PATH_STYLE_PORTS


@dataclass(frozen=True)
class TableEndpoint:
    """
    Resolved service endpoint. The addressing style is decided once.

    Attributes:
        base_url: Service root, including the account segment for path style
        account_name: Storage account name
        path_style: Whether the account is carried in the path
        secondary_url: Service root of the read-only secondary, if known
    """

    base_url: str
    account_name: str
    path_style: bool
    secondary_url: Optional[str] = None

    @classmethod
    def from_url(cls, url: str, account_name: Optional[str] = None, secondary_url: Optional[str] = None) -> "TableEndpoint":
        """
        Resolve an endpoint from a service URL.

        Raises:
            ValueError: If the account name cannot be determined
        """
        parsed = urlsplit(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Endpoint must be an absolute URL: {url}")
        path_style = use_path_style(url)
        segments = [s for s in parsed.path.split("/") if s]

        if path_style:
            if not segments and not account_name:
                raise ValueError(f"Path-style endpoint carries no account name: {url}")
            if not segments:
                segments = [account_name]
            account = account_name or segments[0]
            base = urlunsplit((parsed.scheme, parsed.netloc, "/" + segments[0], "", ""))
        else:
            match = _TABLE_HOST.match(parsed.hostname or "")
            account = account_name or (match.group("account") if match else None)
            if not account:
                raise ValueError(f"Cannot determine the account name from {url}")
            base = urlunsplit((parsed.scheme, parsed.netloc, "", "", ""))

        if secondary_url is None:
            secondary_url = _derive_secondary(base, path_style)
        return cls(base.rstrip("/"), account, path_style, secondary_url)

    @classmethod
    def for_account(cls, account_name: str, endpoint_suffix: str = "core.windows.net", protocol: str = "https") -> "TableEndpoint":
        return cls.from_url(f"{protocol}://{account_name}.table.{endpoint_suffix}")

    def root(self, secondary: bool = False) -> str:
        if secondary and self.secondary_url:
            return self.secondary_url
        return self.base_url

    def url_for(self, path: str = "", query: Optional[Mapping[str, str]] = None, secondary: bool = False) -> str:
        """
        Build a request URL.

        Args:
            path: Already escaped resource path relative to the service root
            query: Query parameters; values are percent-encoded
            secondary: Target the secondary location
        """
        url = self.root(secondary)
        if path:
            url += "/" + path.lstrip("/")
        if query:
            url += "?" + urlencode(dict(query), quote_via=quote, safe="$")
        return url


def _derive_secondary(base: str, path_style: bool) -> Optional[str]:
    parsed = urlsplit(base)
    if path_style:
        return None
    match = _TABLE_HOST.match(parsed.hostname or "")
    if not match:
        return None
    host = f"{match.group('account')}{SECONDARY_SUFFIX}.table.{match.group('suffix')}"
    netloc = host if parsed.port is None else f"{host}:{parsed.port}"
    return urlunsplit((parsed.scheme, netloc, "", "", ""))
