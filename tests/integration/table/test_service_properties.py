"""
Integration tests for reading and writing Table service properties.
"""

from datetime import datetime, timedelta, timezone

import pytest

from tablezure import CloudTableClient, StorageCredentialsAccountAndKey
from tablezure.auth.sas import SharedAccessTablePolicy
from tablezure.emulator import DEVSTORE_ACCOUNT_KEY, DEVSTORE_ACCOUNT_NAME, InMemoryTableService
from tablezure.exceptions import ServiceError
from tablezure.table import CorsRule, LoggingProperties, MetricsProperties, ServiceProperties
from tablezure.table.client import CloudTable

EMULATOR_URL = "http://127.0.0.1:10002/devstoreaccount1"


@pytest.fixture
def service():
    return InMemoryTableService()


@pytest.fixture
def client(service):
    credentials = StorageCredentialsAccountAndKey(DEVSTORE_ACCOUNT_NAME, DEVSTORE_ACCOUNT_KEY)
    return CloudTableClient(EMULATOR_URL, credentials, transport=service)


class TestServiceProperties:
    """Tests for the service properties round trip."""

    def test_defaults(self, client):
        properties = client.get_service_properties()
        assert properties.logging == LoggingProperties()
        assert properties.hour_metrics.enabled is False
        assert properties.minute_metrics.enabled is False
        assert properties.cors == []

    def test_round_trip(self, client):
        uploaded = ServiceProperties(
            logging=LoggingProperties(delete=True, write=True, retention_days=7),
            hour_metrics=MetricsProperties(enabled=True, include_apis=True, retention_days=30),
            minute_metrics=MetricsProperties(enabled=False),
            cors=[CorsRule(["https://example.com"], ["GET", "put"], ["x-ms-meta-*"], ["x-ms-request-id"], 500)],
        )
        client.set_service_properties(uploaded)

        downloaded = client.get_service_properties()
        assert downloaded == uploaded
        assert downloaded.cors[0].allowed_methods == ["GET", "PUT"]

    def test_omitted_sections_are_kept(self, client):
        client.set_service_properties(ServiceProperties(cors=[CorsRule(["*"], ["GET"])]))
        client.set_service_properties(ServiceProperties(logging=LoggingProperties(read=True)))

        downloaded = client.get_service_properties()
        assert downloaded.logging.read is True
        assert downloaded.cors[0].allowed_origins == ["*"]

    def test_put_and_get_requests(self, client, service):
        client.set_service_properties(ServiceProperties(logging=LoggingProperties()))
        request = service.requests[-1]
        assert request.method == "PUT"
        assert "restype=service" in request.url
        assert "comp=properties" in request.url
        assert request.headers["Content-Type"] == "application/xml"

    def test_table_sas_cannot_read_service_properties(self, client, service):
        table = client.get_table_reference("secured")
        table.create()
        expiry = datetime.now(timezone.utc) + timedelta(hours=1)
        sas = table.generate_shared_access_signature(SharedAccessTablePolicy("raud", expiry=expiry))
        holder = CloudTable.from_sas_uri(f"{table.uri}?{sas}", transport=service)

        with pytest.raises(ServiceError) as exc_info:
            holder.client.get_service_properties()
        assert exc_info.value.status == 403
