"""
Unit tests for endpoint addressing.
"""

import pytest

from tablezure.transport.endpoint import TableEndpoint, use_path_style


class TestPathStyleDetection:
    """Tests for use_path_style."""

    @pytest.mark.parametrize("url", [
        "http://127.0.0.1:10002/devstoreaccount1",
        "http://localhost/devstoreaccount1",
        "http://10.0.0.5/acct",
        "http://myhost:10002/acct",
    ])
    def test_path_style(self, url):
        assert use_path_style(url) is True

    @pytest.mark.parametrize("url", [
        "https://acct.table.core.windows.net",
        "https://myhost:8443/acct",
    ])
    def test_virtual_hosted(self, url):
        assert use_path_style(url) is False


class TestTableEndpoint:
    """Tests for endpoint resolution and URL building."""

    def test_path_style_account_from_path(self):
        endpoint = TableEndpoint.from_url("http://127.0.0.1:10002/devstoreaccount1/")
        assert endpoint.account_name == "devstoreaccount1"
        assert endpoint.base_url == "http://127.0.0.1:10002/devstoreaccount1"
        assert endpoint.path_style is True
        assert endpoint.secondary_url is None

    def test_path_style_account_from_argument(self):
        endpoint = TableEndpoint.from_url("http://127.0.0.1:10002", account_name="devstoreaccount1")
        assert endpoint.url_for("Tables") == "http://127.0.0.1:10002/devstoreaccount1/Tables"

    def test_path_style_without_account(self):
        with pytest.raises(ValueError):
            TableEndpoint.from_url("http://127.0.0.1:10002")

    def test_virtual_hosted_secondary(self):
        endpoint = TableEndpoint.for_account("myacct")
        assert endpoint.base_url == "https://myacct.table.core.windows.net"
        assert endpoint.secondary_url == "https://myacct-secondary.table.core.windows.net"
        assert endpoint.url_for("people", secondary=True) == "https://myacct-secondary.table.core.windows.net/people"

    def test_unknown_host_needs_account(self):
        with pytest.raises(ValueError):
            TableEndpoint.from_url("https://example.com")

    def test_relative_url_rejected(self):
        with pytest.raises(ValueError):
            TableEndpoint.from_url("/devstoreaccount1")

    def test_query_encoding(self):
        endpoint = TableEndpoint.for_account("a")
        url = endpoint.url_for("people()", {"$filter": "Name eq 'a b'", "$top": "5"})
        assert url == "https://a.table.core.windows.net/people()?$filter=Name%20eq%20%27a%20b%27&$top=5"
