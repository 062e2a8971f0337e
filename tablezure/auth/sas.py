"""Shared Access Signatures for tables.

This module generates service SAS tokens for a single table, models stored
access policies (and their ``SignedIdentifiers`` XML document), and validates
incoming SAS tokens on the service side.
"""

import hmac
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Union
from urllib.parse import parse_qs, urlencode, urlsplit

from tablezure.auth.credentials import (
    StorageCredentials,
    StorageCredentialsAccountAndKey,
    StorageCredentialsSharedAccessSignature,
    compute_hmac,
)
from tablezure.auth.exceptions import SasDerivationError, SasValidationError
from tablezure.exceptions import ValidationError

logger = logging.getLogger(__name__)

SAS_VERSION = "2014-02-14"
MAX_STORED_POLICIES = 5


class SharedAccessTablePermissions(str, Enum):
    """SAS permission flags for tables, in canonical order."""

    QUERY = "r"
    ADD = "a"
    UPDATE = "u"
    DELETE = "d"


_CANONICAL_ORDER = [p.value for p in SharedAccessTablePermissions]


def permissions_to_string(permissions: Iterable[SharedAccessTablePermissions]) -> str:
    """Render permissions in the canonical ``raud`` order."""
    granted = {SharedAccessTablePermissions(p).value for p in permissions}
    return "".join(flag for flag in _CANONICAL_ORDER if flag in granted)


def permissions_from_string(text: str) -> FrozenSet[SharedAccessTablePermissions]:
    """
    Parse a permission string in any order.

    Raises:
        ValueError: If the string holds an unknown flag
    """
    result = set()
    for char in text or "":
        try:
            result.add(SharedAccessTablePermissions(char))
        except ValueError as exc:
            raise ValueError(f"Invalid table SAS permission: {char!r}") from exc
    return frozenset(result)


def format_sas_time(value: Optional[datetime]) -> str:
    """ISO-8601 UTC with second precision, or an empty string."""
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_sas_time(text: str) -> datetime:
    parsed = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SharedAccessTablePolicy:
    """Permissions and validity window of a SAS or stored policy."""

    permissions: FrozenSet[SharedAccessTablePermissions] = frozenset()
    start: Optional[datetime] = None
    expiry: Optional[datetime] = None

    def __post_init__(self):
        permissions = self.permissions
        if isinstance(permissions, str):
            permissions = permissions_from_string(permissions)
        object.__setattr__(self, "permissions", frozenset(SharedAccessTablePermissions(p) for p in permissions))

    @property
    def permission_string(self) -> str:
        return permissions_to_string(self.permissions)


@dataclass
class TablePermissions:
    """
    Stored access policies of a table, keyed by signed identifier.

    At most five policies may be stored per table.
    """

    shared_access_policies: Dict[str, SharedAccessTablePolicy] = field(default_factory=dict)

    def __post_init__(self):
        self._check_count(len(self.shared_access_policies))

    def add(self, identifier: str, policy: SharedAccessTablePolicy) -> None:
        if identifier not in self.shared_access_policies:
            self._check_count(len(self.shared_access_policies) + 1)
        self.shared_access_policies[identifier] = policy

    @staticmethod
    def _check_count(count: int) -> None:
        if count > MAX_STORED_POLICIES:
            raise ValidationError(
                f"At most {MAX_STORED_POLICIES} stored access policies may be set on a table",
                error_code="TooManyStoredPolicies",
                details={"count": count},
            )

    def to_xml(self) -> bytes:
        """Serialize as a ``SignedIdentifiers`` document."""
        self._check_count(len(self.shared_access_policies))
        root = ET.Element("SignedIdentifiers")
        for identifier, policy in self.shared_access_policies.items():
            signed = ET.SubElement(root, "SignedIdentifier")
            ET.SubElement(signed, "Id").text = identifier
            access = ET.SubElement(signed, "AccessPolicy")
            if policy.start is not None:
                ET.SubElement(access, "Start").text = format_sas_time(policy.start)
            if policy.expiry is not None:
                ET.SubElement(access, "Expiry").text = format_sas_time(policy.expiry)
            if policy.permissions:
                ET.SubElement(access, "Permission").text = policy.permission_string
        return b'<?xml version="1.0" encoding="utf-8"?>' + ET.tostring(root, encoding="utf-8", xml_declaration=False)

    @classmethod
    def from_xml(cls, data: Union[bytes, str]) -> "TablePermissions":
        """
        Parse a ``SignedIdentifiers`` document.

        Raises:
            ValidationError: If the document is malformed or holds too many policies
        """
        if not data or not data.strip():
            return cls()
        try:
            root = ET.fromstring(data)
        except ET.ParseError as exc:
            raise ValidationError(f"Malformed SignedIdentifiers document: {exc}") from exc

        policies: Dict[str, SharedAccessTablePolicy] = {}
        for signed in root.findall("SignedIdentifier"):
            identifier = signed.findtext("Id")
            if not identifier:
                raise ValidationError("SignedIdentifier without Id")
            access = signed.find("AccessPolicy")
            start = expiry = None
            permission = ""
            if access is not None:
                start_text = access.findtext("Start")
                expiry_text = access.findtext("Expiry")
                start = parse_sas_time(start_text) if start_text else None
                expiry = parse_sas_time(expiry_text) if expiry_text else None
                permission = access.findtext("Permission") or ""
            policies[identifier] = SharedAccessTablePolicy(permission, start, expiry)
        return cls(policies)


# ========== Generation ==========

def build_string_to_sign(
    account_name: str,
    table_name: str,
    permissions: str = "",
    start: str = "",
    expiry: str = "",
    identifier: str = "",
    version: str = SAS_VERSION,
    start_partition_key: str = "",
    start_row_key: str = "",
    end_partition_key: str = "",
    end_row_key: str = "",
) -> str:
    """
    Table SAS string to sign.

    Fields, newline separated: permissions, start, expiry,
    ``/table/<account>/<table lower-cased>``, identifier, version, and the
    start/end partition and row keys. Absent fields are empty strings.
    """
    canonical_resource = f"/table/{account_name}/{table_name.lower()}"
    return "\n".join([
        permissions,
        start,
        expiry,
        canonical_resource,
        identifier,
        version,
        start_partition_key,
        start_row_key,
        end_partition_key,
        end_row_key,
    ])


class SasTokenGenerator:
    """
    Generates table SAS tokens from account key credentials.

    Example:
        generator = SasTokenGenerator(credentials)
        token = generator.generate("mytable", policy=SharedAccessTablePolicy("raud", expiry=tomorrow))
    """

    def __init__(self, credentials: StorageCredentials, version: str = SAS_VERSION):
        self.credentials = credentials
        self.version = version

    def generate(
        self,
        table_name: str,
        policy: Optional[SharedAccessTablePolicy] = None,
        identifier: Optional[str] = None,
        start_partition_key: Optional[str] = None,
        start_row_key: Optional[str] = None,
        end_partition_key: Optional[str] = None,
        end_row_key: Optional[str] = None,
    ) -> str:
        """
        Build the SAS query string (without the leading ``?``).

        Raises:
            SasDerivationError: If the credentials are themselves a SAS
        """
        if isinstance(self.credentials, StorageCredentialsSharedAccessSignature):
            raise SasDerivationError()
        if not isinstance(self.credentials, StorageCredentialsAccountAndKey):
            raise SasDerivationError("Account key credentials are required to sign a SAS")

        policy = policy or SharedAccessTablePolicy()
        fields = {
            "sp": policy.permission_string,
            "st": format_sas_time(policy.start),
            "se": format_sas_time(policy.expiry),
            "si": identifier or "",
            "spk": start_partition_key or "",
            "srk": start_row_key or "",
            "epk": end_partition_key or "",
            "erk": end_row_key or "",
        }
        string_to_sign = build_string_to_sign(
            self.credentials.account_name,
            table_name,
            permissions=fields["sp"],
            start=fields["st"],
            expiry=fields["se"],
            identifier=fields["si"],
            version=self.version,
            start_partition_key=fields["spk"],
            start_row_key=fields["srk"],
            end_partition_key=fields["epk"],
            end_row_key=fields["erk"],
        )
        signature = self.credentials.sign(string_to_sign)

        params = [("sv", self.version), ("tn", table_name.lower())]
        for key in ("sp", "st", "se", "si", "spk", "srk", "epk", "erk"):
            if fields[key]:
                params.append((key, fields[key]))
        params.append(("sig", signature))
        logger.debug(f"Generated table SAS for {table_name.lower()} with permissions '{fields['sp']}'")
        return urlencode(params)


# ========== Validation (service side) ==========

@dataclass
class SasToken:
    """Parsed table SAS token."""

    signed_version: str
    table_name: str
    signature: str
    permissions: str = ""
    start: str = ""
    expiry: str = ""
    identifier: str = ""
    start_partition_key: str = ""
    start_row_key: str = ""
    end_partition_key: str = ""
    end_row_key: str = ""


def is_sas_request(url: str) -> bool:
    return "sig" in parse_qs(urlsplit(url).query)


def parse_sas_token(url: str) -> SasToken:
    """
    Parse SAS parameters from a request URL.

    Raises:
        SasValidationError: If required parameters are missing
    """
    params = {k: v[0] for k, v in parse_qs(urlsplit(url).query, keep_blank_values=True).items() if v}
    for required in ("sv", "tn", "sig"):
        if not params.get(required):
            raise SasValidationError(f"Missing required SAS parameter: {required}", "InvalidQueryParameterValue")
    return SasToken(
        signed_version=params["sv"],
        table_name=params["tn"],
        signature=params["sig"],
        permissions=params.get("sp", ""),
        start=params.get("st", ""),
        expiry=params.get("se", ""),
        identifier=params.get("si", ""),
        start_partition_key=params.get("spk", ""),
        start_row_key=params.get("srk", ""),
        end_partition_key=params.get("epk", ""),
        end_row_key=params.get("erk", ""),
    )


class SasValidator:
    """Validator for table SAS tokens presented to the service."""

    def __init__(
        self,
        account_name: str,
        account_key: str,
        stored_policies: Optional[Callable[[str], Dict[str, SharedAccessTablePolicy]]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Args:
            account_name: Storage account name
            account_key: Storage account key (base64 encoded)
            stored_policies: Lookup of a table's stored policies by table name
            clock: Source of the current UTC time
        """
        self.credentials = StorageCredentialsAccountAndKey(account_name, account_key)
        self.stored_policies = stored_policies or (lambda table: {})
        self.clock = clock

    def validate_signature(self, token: SasToken) -> None:
        string_to_sign = build_string_to_sign(
            self.credentials.account_name,
            token.table_name,
            permissions=token.permissions,
            start=token.start,
            expiry=token.expiry,
            identifier=token.identifier,
            version=token.signed_version,
            start_partition_key=token.start_partition_key,
            start_row_key=token.start_row_key,
            end_partition_key=token.end_partition_key,
            end_row_key=token.end_row_key,
        )
        expected = compute_hmac(self.credentials.key_bytes, string_to_sign)
        if not hmac.compare_digest(expected, token.signature):
            raise SasValidationError("Signature mismatch", "AuthenticationFailed")

    def effective_policy(self, token: SasToken) -> SharedAccessTablePolicy:
        """Combine the token's own fields with its stored policy, if any."""
        permissions, start, expiry = token.permissions, token.start, token.expiry
        if token.identifier:
            stored = self.stored_policies(token.table_name).get(token.identifier)
            if stored is None:
                raise SasValidationError(
                    f"Stored access policy '{token.identifier}' not found", "AuthenticationFailed"
                )
            permissions = permissions or stored.permission_string
            start = start or format_sas_time(stored.start)
            expiry = expiry or format_sas_time(stored.expiry)
        try:
            return SharedAccessTablePolicy(
                permissions_from_string(permissions),
                parse_sas_time(start) if start else None,
                parse_sas_time(expiry) if expiry else None,
            )
        except ValueError as exc:
            raise SasValidationError(str(exc), "InvalidQueryParameterValue") from exc

    def validate(
        self,
        url: str,
        table_name: str,
        required_permission: SharedAccessTablePermissions,
        partition_key: Optional[str] = None,
        row_key: Optional[str] = None,
    ) -> SasToken:
        """
        Perform complete SAS validation for a request.

        Raises:
            SasValidationError: If any check fails
        """
        token = parse_sas_token(url)
        self.validate_signature(token)

        if token.table_name.lower() != table_name.lower():
            raise SasValidationError("SAS is not valid for this table", "AuthorizationResourceTypeMismatch")

        policy = self.effective_policy(token)
        now = self.clock()
        if policy.expiry is None:
            raise SasValidationError("SAS has no expiry time", "AuthenticationFailed")
        if now >= policy.expiry:
            raise SasValidationError("SAS token has expired", "AuthenticationFailed")
        if policy.start is not None and now < policy.start:
            raise SasValidationError("SAS token not yet valid", "AuthenticationFailed")
        if required_permission not in policy.permissions:
            raise SasValidationError(
                f"SAS token lacks required permission: {required_permission.value}",
                "AuthorizationPermissionMismatch",
            )
        if partition_key is not None and not self.key_in_range(token, partition_key, row_key or ""):
            raise SasValidationError("Entity is outside the SAS key range", "AuthorizationFailure")
        return token

    @staticmethod
    def key_in_range(token: SasToken, partition_key: str, row_key: str) -> bool:
        if token.start_partition_key:
            if partition_key < token.start_partition_key:
                return False
            if partition_key == token.start_partition_key and token.start_row_key and row_key < token.start_row_key:
                return False
        if token.end_partition_key:
            if partition_key > token.end_partition_key:
                return False
            if partition_key == token.end_partition_key and token.end_row_key and row_key > token.end_row_key:
                return False
        return True


def get_permission_for_method(http_method: str) -> SharedAccessTablePermissions:
    """
    Map an entity request method to the permission it needs.

    Raises:
        ValueError: If method cannot be mapped
    """
    method_map = {
        "GET": SharedAccessTablePermissions.QUERY,
        "HEAD": SharedAccessTablePermissions.QUERY,
        "POST": SharedAccessTablePermissions.ADD,
        "PUT": SharedAccessTablePermissions.UPDATE,
        "MERGE": SharedAccessTablePermissions.UPDATE,
        "DELETE": SharedAccessTablePermissions.DELETE,
    }
    method_upper = http_method.upper()
    if method_upper not in method_map:
        raise ValueError(f"Unsupported HTTP method: {http_method}")
    return method_map[method_upper]
