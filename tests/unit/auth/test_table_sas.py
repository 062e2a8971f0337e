"""
Unit tests for table SAS generation, stored policies and validation.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl

import pytest

from tablezure.auth.credentials import StorageCredentialsAccountAndKey, StorageCredentialsSharedAccessSignature
from tablezure.auth.exceptions import SasDerivationError, SasValidationError
from tablezure.auth.sas import (
    MAX_STORED_POLICIES,
    SAS_VERSION,
    SasTokenGenerator,
    SasValidator,
    SharedAccessTablePermissions,
    SharedAccessTablePolicy,
    TablePermissions,
    permissions_from_string,
    permissions_to_string,
)
from tablezure.exceptions import ValidationError

ACCOUNT = "acct"
KEY = base64.b64encode(b"0123456789abcdef").decode()
NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
EXPIRY = NOW + timedelta(hours=1)


@pytest.fixture
def generator():
    return SasTokenGenerator(StorageCredentialsAccountAndKey(ACCOUNT, KEY))


def validator(policies=None):
    return SasValidator(ACCOUNT, KEY, stored_policies=lambda table: policies or {}, clock=lambda: NOW)


def url_with(token, table="capstable123"):
    return f"http://h/{ACCOUNT}/{table}()?{token}"


class TestPermissions:
    """Tests for permission flags."""

    def test_canonical_order(self):
        assert permissions_to_string({SharedAccessTablePermissions.DELETE, SharedAccessTablePermissions.QUERY}) == "rd"

    def test_parse_any_order(self):
        assert permissions_from_string("dura") == frozenset(SharedAccessTablePermissions)

    def test_unknown_flag(self):
        with pytest.raises(ValueError):
            permissions_from_string("rw")

    def test_policy_from_string(self):
        assert SharedAccessTablePolicy("ua").permission_string == "au"


class TestGenerate:
    """Tests for SAS token generation."""

    def test_table_name_lower_cased(self, generator):
        token = generator.generate("CAPStable123", SharedAccessTablePolicy("r", expiry=EXPIRY))
        params = dict(parse_qsl(token))
        assert params["tn"] == "capstable123"

        string_to_sign = "\n".join([
            "r", "", "2024-06-01T13:00:00Z", "/table/acct/capstable123", "", SAS_VERSION, "", "", "", "",
        ])
        expected = base64.b64encode(
            hmac.new(b"0123456789abcdef", string_to_sign.encode("utf-8"), hashlib.sha256).digest()
        ).decode()
        assert params["sig"] == expected

    def test_parameter_order(self, generator):
        token = generator.generate(
            "people", SharedAccessTablePolicy("raud", start=NOW, expiry=EXPIRY),
            start_partition_key="a", end_partition_key="m", end_row_key="z",
        )
        assert [key for key, _ in parse_qsl(token)] == ["sv", "tn", "sp", "st", "se", "spk", "epk", "erk", "sig"]

    def test_identifier_only(self, generator):
        params = dict(parse_qsl(generator.generate("people", identifier="policy1")))
        assert params["si"] == "policy1"
        assert "sp" not in params
        assert "se" not in params

    def test_cannot_derive_from_sas(self):
        generator = SasTokenGenerator(StorageCredentialsSharedAccessSignature("sv=1&sig=x"))
        with pytest.raises(SasDerivationError):
            generator.generate("people", SharedAccessTablePolicy("r", expiry=EXPIRY))


class TestStoredPolicies:
    """Tests for TablePermissions."""

    def test_limit(self):
        permissions = TablePermissions()
        for i in range(MAX_STORED_POLICIES):
            permissions.add(f"id{i}", SharedAccessTablePolicy("r"))
        with pytest.raises(ValidationError) as exc_info:
            permissions.add("id5", SharedAccessTablePolicy("r"))
        assert exc_info.value.error_code == "TooManyStoredPolicies"

    def test_replacing_existing_identifier_allowed(self):
        permissions = TablePermissions({f"id{i}": SharedAccessTablePolicy("r") for i in range(5)})
        permissions.add("id0", SharedAccessTablePolicy("a"))
        assert permissions.shared_access_policies["id0"].permission_string == "a"

    def test_constructor_limit(self):
        with pytest.raises(ValidationError):
            TablePermissions({f"id{i}": SharedAccessTablePolicy("r") for i in range(6)})

    def test_xml_round_trip(self):
        permissions = TablePermissions()
        permissions.add("full", SharedAccessTablePolicy("raud", start=NOW, expiry=EXPIRY))
        permissions.add("bare", SharedAccessTablePolicy())
        xml = permissions.to_xml()
        assert xml.startswith(b'<?xml version="1.0" encoding="utf-8"?><SignedIdentifiers>')
        assert b"<Permission>raud</Permission>" in xml

        parsed = TablePermissions.from_xml(xml)
        assert parsed.shared_access_policies == permissions.shared_access_policies

    def test_empty_document(self):
        assert TablePermissions.from_xml(b"").shared_access_policies == {}

    def test_malformed_document(self):
        with pytest.raises(ValidationError):
            TablePermissions.from_xml(b"<SignedIdentifiers>")


class TestValidate:
    """Tests for service side SAS validation."""

    def test_valid_token(self, generator):
        token = generator.generate("CAPStable123", SharedAccessTablePolicy("r", expiry=EXPIRY))
        parsed = validator().validate(url_with(token), "CapsTable123", SharedAccessTablePermissions.QUERY)
        assert parsed.table_name == "capstable123"

    def test_missing_permission(self, generator):
        token = generator.generate("people", SharedAccessTablePolicy("r", expiry=EXPIRY))
        with pytest.raises(SasValidationError) as exc_info:
            validator().validate(url_with(token, "people"), "people", SharedAccessTablePermissions.ADD)
        assert exc_info.value.error_code == "AuthorizationPermissionMismatch"

    def test_expired(self, generator):
        token = generator.generate("people", SharedAccessTablePolicy("r", expiry=NOW - timedelta(seconds=1)))
        with pytest.raises(SasValidationError):
            validator().validate(url_with(token, "people"), "people", SharedAccessTablePermissions.QUERY)

    def test_not_yet_valid(self, generator):
        policy = SharedAccessTablePolicy("r", start=NOW + timedelta(minutes=5), expiry=EXPIRY)
        token = generator.generate("people", policy)
        with pytest.raises(SasValidationError):
            validator().validate(url_with(token, "people"), "people", SharedAccessTablePermissions.QUERY)

    def test_wrong_table(self, generator):
        token = generator.generate("people", SharedAccessTablePolicy("r", expiry=EXPIRY))
        with pytest.raises(SasValidationError):
            validator().validate(url_with(token, "orders"), "orders", SharedAccessTablePermissions.QUERY)

    def test_tampered_permissions(self, generator):
        token = generator.generate("people", SharedAccessTablePolicy("r", expiry=EXPIRY))
        with pytest.raises(SasValidationError):
            validator().validate(url_with(token.replace("sp=r", "sp=raud"), "people"), "people",
                                 SharedAccessTablePermissions.ADD)

    def test_stored_policy(self, generator):
        token = generator.generate("people", identifier="readers")
        stored = {"readers": SharedAccessTablePolicy("r", expiry=EXPIRY)}
        validator(stored).validate(url_with(token, "people"), "people", SharedAccessTablePermissions.QUERY)
        with pytest.raises(SasValidationError):
            validator().validate(url_with(token, "people"), "people", SharedAccessTablePermissions.QUERY)

    def test_key_range(self, generator):
        token = generator.generate(
            "people", SharedAccessTablePolicy("r", expiry=EXPIRY),
            start_partition_key="b", end_partition_key="d",
        )
        check = validator()
        check.validate(url_with(token, "people"), "people", SharedAccessTablePermissions.QUERY, "c", "x")
        with pytest.raises(SasValidationError):
            check.validate(url_with(token, "people"), "people", SharedAccessTablePermissions.QUERY, "e", "x")
