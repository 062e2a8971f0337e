"""
Storage credentials.

Two kinds are supported: an account name with its base64 encoded key, and a
shared access signature token that is appended to each request URL.
"""

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Dict, Union
from urllib.parse import parse_qsl

from tablezure.auth.exceptions import InvalidAccountKeyError


def compute_hmac(key_bytes: bytes, string_to_sign: str) -> str:
    """Base64(HMAC-SHA256(key, UTF8(string_to_sign)))."""
    digest = hmac.new(key_bytes, string_to_sign.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


@dataclass(frozen=True)
class StorageCredentialsAccountAndKey:
    """Account name and key (base64 encoded)."""

    account_name: str
    account_key: str = field(repr=False)

    def __post_init__(self):
        try:
            base64.b64decode(self.account_key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidAccountKeyError() from exc

    @property
    def key_bytes(self) -> bytes:
        return base64.b64decode(self.account_key)

    def sign(self, string_to_sign: str) -> str:
        return compute_hmac(self.key_bytes, string_to_sign)


@dataclass(frozen=True)
class StorageCredentialsSharedAccessSignature:
    """A SAS token, with or without the leading ``?``."""

    token: str = field(repr=False)

    def __post_init__(self):
        object.__setattr__(self, "token", self.token.lstrip("?"))

    def query_params(self) -> Dict[str, str]:
        return dict(parse_qsl(self.token, keep_blank_values=True))

    def transform_url(self, url: str) -> str:
        """Append the token to a request URL."""
        if not self.token:
            return url
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{self.token}"


StorageCredentials = Union[StorageCredentialsAccountAndKey, StorageCredentialsSharedAccessSignature]
