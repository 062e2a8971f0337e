"""
SharedKey authorization for the Table service.

The Table service uses its own string-to-sign layout:

    VERB\\n
    Content-MD5\\n
    Content-Type\\n
    Date\\n
    CanonicalizedResource

where Date is the ``x-ms-date`` header (or ``Date``) and the canonicalized
resource is ``/<account><encoded path>`` plus ``?comp=<value>`` when the
request carries a ``comp`` query parameter.

Reference: https://docs.microsoft.com/en-us/rest/api/storageservices/authorize-with-shared-key
"""

import hmac
import logging
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Dict, MutableMapping, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from tablezure.auth.credentials import StorageCredentialsAccountAndKey, compute_hmac
from tablezure.auth.exceptions import (
    AuthenticationError,
    InvalidAuthorizationHeaderError,
    SignatureMismatchError,
)

logger = logging.getLogger(__name__)


def build_string_to_sign(method: str, url: str, headers: Dict[str, str], account_name: str) -> str:
    """
    Build the Table flavour SharedKey string to sign.

    Args:
        method: HTTP method
        url: Full request URL
        headers: Request headers (any case)
        account_name: Storage account name
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    parts = [
        method.upper(),
        lowered.get("content-md5", ""),
        lowered.get("content-type", ""),
        lowered.get("x-ms-date") or lowered.get("date", ""),
        _build_canonicalized_resource(url, account_name),
    ]
    return "\n".join(parts)


def _build_canonicalized_resource(url: str, account_name: str) -> str:
    """
    Build CanonicalizedResource string.

    Format:
        /account-name/encoded-path[?comp=value]
    """
    parsed = urlsplit(url)
    resource = f"/{account_name}{parsed.path or '/'}"
    comp = parse_qs(parsed.query).get("comp")
    if comp:
        resource += f"?comp={comp[0]}"
    return resource


def sign_request(
    method: str,
    url: str,
    headers: MutableMapping[str, str],
    credentials: StorageCredentialsAccountAndKey,
) -> MutableMapping[str, str]:
    """
    Add ``x-ms-date`` (when absent) and the SharedKey ``Authorization`` header.

    Returns:
        The same headers mapping
    """
    if not any(k.lower() == "x-ms-date" for k in headers):
        headers["x-ms-date"] = formatdate(usegmt=True)
    string_to_sign = build_string_to_sign(method, url, dict(headers), credentials.account_name)
    signature = credentials.sign(string_to_sign)
    headers["Authorization"] = f"SharedKey {credentials.account_name}:{signature}"
    return headers


def parse_authorization_header(auth_header: str) -> Tuple[str, str]:
    """
    Parse SharedKey Authorization header.

    Expected format: "SharedKey account:signature"

    Returns:
        Tuple of (account_name, signature)

    Raises:
        InvalidAuthorizationHeaderError: If header is malformed
    """
    parts = auth_header.strip().split(maxsplit=1)

    if len(parts) != 2:
        raise InvalidAuthorizationHeaderError(
            "Authorization header must be in format: SharedKey account:signature"
        )

    scheme, credentials = parts

    if scheme.lower() != "sharedkey":
        raise InvalidAuthorizationHeaderError(f"Expected SharedKey scheme, got: {scheme}")

    if ":" not in credentials:
        raise InvalidAuthorizationHeaderError("Credentials must be in format: account:signature")

    account_name, signature = credentials.split(":", 1)

    if not account_name or not signature:
        raise InvalidAuthorizationHeaderError("Account name and signature cannot be empty")

    return account_name, signature


class SharedKeyAuthenticator:
    """
    Validates SharedKey authorization on the service side.

    Used by the in-memory service to check requests signed by the client.
    """

    # Default clock skew tolerance (15 minutes)
    DEFAULT_CLOCK_SKEW_SECONDS = 15 * 60

    def __init__(self, credentials_store: Dict[str, str], clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS):
        """
        Args:
            credentials_store: Map of account_name -> base64 encoded key
            clock_skew_seconds: Allowed clock skew tolerance in seconds
        """
        self.credentials_store = credentials_store
        self.clock_skew_seconds = clock_skew_seconds

    def authenticate(self, method: str, url: str, headers: Dict[str, str]) -> str:
        """
        Authenticate a request.

        Returns:
            The authenticated account name

        Raises:
            InvalidAuthorizationHeaderError: If the header is missing or malformed
            AuthenticationError: If the account is unknown or the date is skewed
            SignatureMismatchError: If the signature does not match
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        auth_header = lowered.get("authorization")
        if not auth_header:
            raise InvalidAuthorizationHeaderError("Authorization header is missing")

        account_name, provided_signature = parse_authorization_header(auth_header)
        account_key = self.credentials_store.get(account_name)
        if not account_key:
            logger.warning(f"Account not found: {account_name}")
            raise AuthenticationError(
                f"Server failed to authenticate the request. Account '{account_name}' not found."
            )

        self._validate_timestamp(lowered)

        credentials = StorageCredentialsAccountAndKey(account_name, account_key)
        expected = compute_hmac(credentials.key_bytes, build_string_to_sign(method, url, lowered, account_name))
        if not hmac.compare_digest(expected, provided_signature):
            logger.warning(f"Signature mismatch for account {account_name}")
            raise SignatureMismatchError()

        logger.debug(f"SharedKey authentication successful for account: {account_name}")
        return account_name

    def _validate_timestamp(self, headers: Dict[str, str]) -> None:
        date_str: Optional[str] = headers.get("x-ms-date") or headers.get("date")
        if not date_str:
            return
        try:
            request_time = parsedate_to_datetime(date_str)
        except (TypeError, ValueError) as exc:
            raise AuthenticationError(f"Invalid date format: {date_str}") from exc
        if request_time.tzinfo is None:
            request_time = request_time.replace(tzinfo=timezone.utc)

        time_diff = abs((datetime.now(timezone.utc) - request_time).total_seconds())
        if time_diff > self.clock_skew_seconds:
            raise AuthenticationError(
                f"Request timestamp is outside allowed clock skew window. "
                f"Diff: {time_diff:.0f}s, Allowed: {self.clock_skew_seconds}s"
            )
