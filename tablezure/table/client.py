"""
Table service client.

``CloudTableClient`` owns the endpoint, credentials, transport and
configuration of one storage account; ``CloudTable`` runs table and entity
operations against a single table through it.

Example:
    client = CloudTableClient("https://myaccount.table.core.windows.net",
                              StorageCredentialsAccountAndKey("myaccount", key))
    table = client.get_table_reference("people")
    table.create_if_not_exists()
    table.execute(TableOperation.insert(entity))
"""

import logging
import re
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Collection, Dict, Iterator, List, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from tablezure.auth.credentials import (
    StorageCredentials,
    StorageCredentialsAccountAndKey,
    StorageCredentialsSharedAccessSignature,
)
from tablezure.auth.sas import SasTokenGenerator, SharedAccessTablePolicy, TablePermissions
from tablezure.auth.sharedkey import sign_request
from tablezure.core.config_manager import ClientConfig, TableRequestOptions
from tablezure.core.logging_config import (
    apply_logging_config,
    log_with_context,
    reset_client_request_id,
    set_client_request_id,
)
from tablezure.core.operation_context import OperationContext, RequestResult
from tablezure.exceptions import BatchServiceError, OperationCancelledError, ServiceError, TransportError, ValidationError
from tablezure.table.batch import TableBatchOperation, validate_batch
from tablezure.table.codec import (
    JSON_CONTENT_TYPE,
    accept_header,
    deserialize_entities,
    deserialize_table_names,
    serialize_table_name,
)
from tablezure.table.filters import QueryComparisons, TableOperators, combine_filters, generate_filter_condition
from tablezure.table.models import TableNameValidator
from tablezure.table.multipart import BatchPart, decode_batch_response, encode_batch_request
from tablezure.table.operations import DATA_SERVICE_VERSION, PREFER_NO_CONTENT, TableOperation, TableOperationType, TableResult
from tablezure.table.query import ContinuationToken, QuerySegment, TableQuery
from tablezure.table.service_properties import ServiceProperties
from tablezure.transport.endpoint import TableEndpoint
from tablezure.transport.http import HttpRequest, HttpResponse, HttpxTransport, Transport
from tablezure.transport.retry import LocationMode, RequestExecutor, StorageLocation

logger = logging.getLogger(__name__)

_BATCH_FAILED_INDEX = re.compile(r"^(\d+):")


class CloudTableClient:
    """
    Entry point for one storage account's Table service.

    Args:
        endpoint: Service URL or a resolved ``TableEndpoint``
        credentials: Account key or SAS credentials
        transport: Transport to send requests with (httpx by default)
        config: Client-wide defaults; when given, its ``logging`` section is
            applied to the ``tablezure`` logger
    """

    def __init__(
        self,
        endpoint: Union[str, TableEndpoint],
        credentials: StorageCredentials,
        transport: Optional[Transport] = None,
        config: Optional[ClientConfig] = None,
    ):
        if isinstance(endpoint, str):
            account_name = getattr(credentials, "account_name", None)
            endpoint = TableEndpoint.from_url(endpoint, account_name=account_name)
        self.endpoint = endpoint
        self.credentials = credentials
        if config is not None:
            apply_logging_config(config.logging)
        self.config = config or ClientConfig()
        self.transport = transport or HttpxTransport(timeout=self.config.timeout_seconds)

    @property
    def account_name(self) -> str:
        return self.endpoint.account_name

    def get_table_reference(self, table_name: str) -> "CloudTable":
        """
        Raises:
            ValidationError: If the table name breaks the naming rules
        """
        is_valid, error = TableNameValidator.validate(table_name)
        if not is_valid:
            raise ValidationError(error, error_code="InvalidTableName", details={"table_name": table_name})
        return CloudTable(table_name, self)

    def list_tables(self, prefix: Optional[str] = None, options: Optional[TableRequestOptions] = None) -> Iterator[str]:
        """Yield table names, following continuation tokens."""
        opts = self.resolve_options(options)
        query: Dict[str, str] = {}
        if prefix:
            query["$filter"] = combine_filters(
                generate_filter_condition("TableName", QueryComparisons.GREATER_THAN_OR_EQUAL, prefix),
                TableOperators.AND,
                generate_filter_condition("TableName", QueryComparisons.LESS_THAN, prefix + "{"),
            )
        token: Optional[ContinuationToken] = None
        while True:
            params = dict(query)
            if token is not None:
                params.update(token.to_query_params())
            response = self.execute_request(
                "GET", "Tables", opts, query=params,
                headers={"Accept": accept_header(opts.payload_format)},
                read_only=True,
            )
            yield from deserialize_table_names(response.body)
            token = ContinuationToken.from_headers(response.headers)
            if token is None or token.next_table_name is None:
                return

    # ========== Request pipeline ==========

    def resolve_options(self, options: Optional[TableRequestOptions]) -> TableRequestOptions:
        return (options or TableRequestOptions()).apply_defaults(self.config)

    def execute_request(
        self,
        method: str,
        path: str,
        options: TableRequestOptions,
        query: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        accept_statuses: Collection[int] = (),
        read_only: bool = False,
        cancel_event: Optional[threading.Event] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> HttpResponse:
        """
        Send one logical request under the retry policy.

        Writes always target the primary location; reads follow the
        request's location mode. Each attempt uses ``options.timeout``.

        Raises:
            ServiceError: On a fatal service response
            RetryExhaustedError: When retryable failures outlast the policy
            OperationCancelledError: If ``cancel_event`` is set before an attempt
        """
        mode = options.location_mode if read_only else LocationMode.PRIMARY_ONLY
        if mode.uses_secondary() and not self.endpoint.secondary_url:
            if mode == LocationMode.SECONDARY_ONLY:
                raise ValidationError("The endpoint has no secondary location", error_code="NoSecondaryLocation")
            mode = LocationMode.PRIMARY_ONLY

        context = operation_context
        executor = RequestExecutor(
            options.retry_policy, mode, options.max_execution_time,
            on_retry=context.fire_retrying if context is not None else None,
        )
        request_id = (
            options.client_request_id
            or (context.client_request_id if context is not None else None)
            or str(uuid.uuid4())
        )

        def attempt(location: StorageLocation) -> HttpResponse:
            url = self.endpoint.url_for(path, query, secondary=location == StorageLocation.SECONDARY)
            request_headers = dict(context.user_headers) if context is not None else {}
            request_headers.update({
                "x-ms-version": self.config.api_version,
                "x-ms-client-request-id": request_id,
                "DataServiceVersion": DATA_SERVICE_VERSION,
                "MaxDataServiceVersion": DATA_SERVICE_VERSION,
            })
            request_headers.update(headers or {})
            url = self._authorize(method, url, request_headers)
            logger.debug(f"{method} {url.split('?', 1)[0]} -> {location.value}")
            request = HttpRequest(method, url, request_headers, body, timeout=options.timeout)
            if context is None:
                return self.transport.send(request)
            return self._send_tracked(request, location, context)

        token = set_client_request_id(request_id)
        try:
            return executor.execute(attempt, accept_statuses, cancel_event)
        finally:
            reset_client_request_id(token)

    def _send_tracked(self, request: HttpRequest, location: StorageLocation, context: OperationContext) -> HttpResponse:
        """Send one attempt, recording its result and firing the context's callbacks."""
        result = RequestResult(location)
        context.append_result(result)
        context.fire_sending_request(request, result)
        try:
            response = self.transport.send(request)
        except TransportError as exc:
            result.end_time = datetime.now(timezone.utc)
            result.error = exc
            raise
        result.end_time = datetime.now(timezone.utc)
        result.status = response.status
        result.service_request_id = response.header("x-ms-request-id")
        result.etag = response.header("ETag")
        if response.status >= 300:
            result.error = ServiceError.from_response(response.status, response.headers, response.body)
        context.fire_response_received(request, result, response)
        return response

    # ========== Service properties ==========

    def get_service_properties(
        self,
        options: Optional[TableRequestOptions] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> ServiceProperties:
        """Download the account's logging, metrics and CORS settings."""
        opts = self.resolve_options(options)
        response = self.execute_request(
            "GET", "", opts,
            query={"restype": "service", "comp": "properties"},
            read_only=True,
            operation_context=operation_context,
        )
        return ServiceProperties.from_xml(response.body)

    def set_service_properties(
        self,
        properties: ServiceProperties,
        options: Optional[TableRequestOptions] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> None:
        """
        Upload service settings. Sections left as None keep their current value.

        Raises:
            ServiceError: 403 when the client holds a table SAS
        """
        opts = self.resolve_options(options)
        self.execute_request(
            "PUT", "", opts,
            query={"restype": "service", "comp": "properties"},
            headers={"Content-Type": "application/xml"},
            body=properties.to_xml(),
            operation_context=operation_context,
        )
        logger.info(f"Updated service properties of {self.account_name}")

    def _authorize(self, method: str, url: str, headers: Dict[str, str]) -> str:
        if isinstance(self.credentials, StorageCredentialsSharedAccessSignature):
            return self.credentials.transform_url(url)
        if isinstance(self.credentials, StorageCredentialsAccountAndKey):
            sign_request(method, url, headers, self.credentials)
        return url


class CloudTable:
    """A table in the service."""

    def __init__(self, name: str, client: CloudTableClient):
        self.name = name
        self.client = client

    def __repr__(self) -> str:
        return f"CloudTable({self.name!r}, account={self.client.account_name!r})"

    @classmethod
    def from_sas_uri(
        cls,
        uri: str,
        transport: Optional[Transport] = None,
        config: Optional[ClientConfig] = None,
    ) -> "CloudTable":
        """
        Build a table from a URI that carries a SAS token.

        Example:
            CloudTable.from_sas_uri("https://acct.table.core.windows.net/people?sv=...&sig=...")
        """
        parsed = urlsplit(uri)
        params = parse_qsl(parsed.query, keep_blank_values=True)
        if not any(key == "sig" for key, _ in params):
            raise ValidationError("The URI does not carry a shared access signature")
        segments = [s for s in parsed.path.split("/") if s]
        if not segments:
            raise ValidationError("The URI does not name a table")
        table_name = segments[-1]
        base = urlunsplit((parsed.scheme, parsed.netloc, "/" + "/".join(segments[:-1]), "", ""))
        credentials = StorageCredentialsSharedAccessSignature(parsed.query)
        client = CloudTableClient(base, credentials, transport=transport, config=config)
        return cls(table_name, client)

    # ========== Table lifecycle ==========

    def create(
        self,
        options: Optional[TableRequestOptions] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> None:
        """
        Raises:
            ServiceError: 409 TableAlreadyExists if the table exists
        """
        opts = self.client.resolve_options(options)
        self.client.execute_request(
            "POST", "Tables", opts,
            headers={
                "Accept": accept_header(opts.payload_format),
                "Content-Type": JSON_CONTENT_TYPE,
                "Prefer": PREFER_NO_CONTENT,
            },
            body=serialize_table_name(self.name),
            operation_context=operation_context,
        )
        logger.info(f"Created table: {self.name}")

    def create_if_not_exists(
        self,
        options: Optional[TableRequestOptions] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> bool:
        """Create the table; False if it already existed."""
        try:
            self.create(options, operation_context)
        except ServiceError as exc:
            if exc.status == 409:
                return False
            raise
        return True

    def delete(
        self,
        options: Optional[TableRequestOptions] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> None:
        """
        Raises:
            ServiceError: 404 TableNotFound if the table does not exist
        """
        opts = self.client.resolve_options(options)
        self.client.execute_request(
            "DELETE", f"Tables('{self.name}')", opts,
            headers={"Accept": accept_header(opts.payload_format)},
            operation_context=operation_context,
        )
        logger.info(f"Deleted table: {self.name}")

    def delete_if_exists(
        self,
        options: Optional[TableRequestOptions] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> bool:
        """Delete the table; False if it did not exist."""
        try:
            self.delete(options, operation_context)
        except ServiceError as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def exists(
        self,
        options: Optional[TableRequestOptions] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> bool:
        opts = self.client.resolve_options(options)
        response = self.client.execute_request(
            "GET", f"Tables('{self.name}')", opts,
            headers={"Accept": accept_header(opts.payload_format)},
            accept_statuses=(404,),
            read_only=True,
            operation_context=operation_context,
        )
        return response.status == 200

    # ========== Entities ==========

    def execute(
        self,
        operation: TableOperation,
        options: Optional[TableRequestOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> TableResult:
        """
        Run one entity operation.

        A retrieve of a missing entity returns a result with ``result=None``
        and status 404 instead of raising.
        """
        opts = self.client.resolve_options(options)
        request = operation.build_request(self.name, opts.payload_format)
        is_retrieve = operation.operation_type == TableOperationType.RETRIEVE
        response = self.client.execute_request(
            request.method, request.path, opts,
            headers=request.headers,
            body=request.body,
            accept_statuses=(404,) if is_retrieve else (),
            read_only=is_retrieve,
            cancel_event=cancel_event,
            operation_context=operation_context,
        )
        return operation.parse_response(
            response.status, response.headers, response.body, opts.payload_format, opts.property_resolver
        )

    def delete_entity_if_exists(
        self,
        entity: Any,
        options: Optional[TableRequestOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> bool:
        """
        Delete an entity; False if it did not exist.

        The entity's etag applies as for ``TableOperation.delete``; use
        ``"*"`` to delete whatever version is stored.

        Raises:
            ServiceError: Any failure other than 404, e.g. 412 on a stale etag
        """
        try:
            self.execute(TableOperation.delete(entity), options, cancel_event, operation_context)
        except ServiceError as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def execute_batch(
        self,
        batch: TableBatchOperation,
        options: Optional[TableRequestOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> List[TableResult]:
        """
        Run a batch atomically; results are in input order.

        Raises:
            BatchValidationError: Before any network call, if an invariant is broken
            BatchServiceError: If the service rejects the batch; ``failed_index``
                names the offending operation when the service reports it
            OperationCancelledError: If ``cancel_event`` is set before the batch is sent
        """
        opts = self.client.resolve_options(options)
        bodies = validate_batch(batch, opts.payload_format)
        batch.mark_executed()

        operations = list(batch)
        if len(operations) == 1 and operations[0].operation_type == TableOperationType.RETRIEVE:
            return [self.execute(operations[0], options, cancel_event, operation_context)]

        parts = []
        for operation, body in zip(operations, bodies):
            request = operation.build_request(self.name, opts.payload_format, body)
            parts.append(BatchPart(request.method, self.client.endpoint.url_for(request.path), request.headers, request.body))
        content_type, payload = encode_batch_request(parts)

        response = self.client.execute_request(
            "POST", "$batch", opts,
            headers={"Content-Type": content_type, "Accept": accept_header(opts.payload_format)},
            body=payload,
            cancel_event=cancel_event,
            operation_context=operation_context,
        )
        responses = decode_batch_response(response.header("Content-Type", ""), response.body)

        failures = [part for part in responses if part.status >= 300]
        if failures:
            part = failures[0]
            error = ServiceError.from_response(part.status, part.headers, part.body)
            match = _BATCH_FAILED_INDEX.match(error.message or "")
            failed_index = int(match.group(1)) if match else None
            log_with_context(
                logger, logging.WARNING, f"Batch on {self.name} rejected: {error.message}",
                table=self.name, failed_index=failed_index, status=part.status,
            )
            raise BatchServiceError(
                part.status,
                error.message,
                error_code=error.error_code,
                request_id=response.header("x-ms-request-id"),
                details={"failed_index": failed_index},
                failed_index=failed_index,
            )
        if len(responses) != len(operations):
            raise BatchServiceError(
                response.status,
                f"Batch response holds {len(responses)} parts for {len(operations)} operations",
                error_code="InvalidBatchResponse",
            )

        return [
            operation.parse_response(part.status, part.headers, part.body, opts.payload_format, opts.property_resolver)
            for operation, part in zip(operations, responses)
        ]

    @contextmanager
    def batch(self, options: Optional[TableRequestOptions] = None):
        """
        Collect operations and execute them as one batch on exit.

        Example:
            with table.batch() as batch:
                batch.insert(entity_a)
                batch.insert(entity_b)
        """
        batch = TableBatchOperation()
        yield batch
        self.execute_batch(batch, options)

    # ========== Queries ==========

    def execute_query_segmented(
        self,
        query: TableQuery,
        continuation_token: Optional[ContinuationToken] = None,
        options: Optional[TableRequestOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> QuerySegment:
        """Fetch one page of results."""
        opts = self.client.resolve_options(options)
        params = query.to_query_params()
        if continuation_token is not None:
            params.update(continuation_token.to_query_params())
        response = self.client.execute_request(
            "GET", f"{self.name}()", opts,
            query=params,
            headers={"Accept": accept_header(opts.payload_format)},
            read_only=True,
            cancel_event=cancel_event,
            operation_context=operation_context,
        )
        entities = deserialize_entities(
            response.body, opts.payload_format, opts.property_resolver, query.entity_type
        )
        return QuerySegment(entities, ContinuationToken.from_headers(response.headers))

    def execute_query(
        self,
        query: TableQuery,
        options: Optional[TableRequestOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        operation_context: Optional[OperationContext] = None,
    ) -> "QueryResults":
        """
        Lazily iterate all results, following continuation tokens.

        The returned object can be iterated more than once; each iteration
        restarts the query. Setting ``cancel_event`` stops the iteration
        before the next page is requested.
        """
        return QueryResults(self, query, options, cancel_event, operation_context)

    # ========== Permissions / SAS ==========

    def upload_permissions(self, permissions: TablePermissions, options: Optional[TableRequestOptions] = None) -> None:
        opts = self.client.resolve_options(options)
        self.client.execute_request(
            "PUT", self.name, opts,
            query={"comp": "acl"},
            headers={"Content-Type": "application/xml"},
            body=permissions.to_xml(),
        )

    def download_permissions(self, options: Optional[TableRequestOptions] = None) -> TablePermissions:
        opts = self.client.resolve_options(options)
        response = self.client.execute_request("GET", self.name, opts, query={"comp": "acl"}, read_only=True)
        return TablePermissions.from_xml(response.body)

    def generate_shared_access_signature(
        self,
        policy: Optional[SharedAccessTablePolicy] = None,
        identifier: Optional[str] = None,
        start_partition_key: Optional[str] = None,
        start_row_key: Optional[str] = None,
        end_partition_key: Optional[str] = None,
        end_row_key: Optional[str] = None,
    ) -> str:
        """
        Create a SAS token for this table.

        Raises:
            SasDerivationError: If this table was itself opened with a SAS
        """
        generator = SasTokenGenerator(self.client.credentials)
        return generator.generate(
            self.name,
            policy=policy,
            identifier=identifier,
            start_partition_key=start_partition_key,
            start_row_key=start_row_key,
            end_partition_key=end_partition_key,
            end_row_key=end_row_key,
        )

    @property
    def uri(self) -> str:
        return self.client.endpoint.url_for(self.name)


class QueryResults:
    """Restartable, lazily paged query results."""

    def __init__(
        self,
        table: CloudTable,
        query: TableQuery,
        options: Optional[TableRequestOptions],
        cancel_event: Optional[threading.Event] = None,
        operation_context: Optional[OperationContext] = None,
    ):
        self.table = table
        self.query = query
        self.options = options
        self.cancel_event = cancel_event
        self.operation_context = operation_context

    def __iter__(self) -> Iterator[Any]:
        token: Optional[ContinuationToken] = None
        while True:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise OperationCancelledError(f"Query on {self.table.name} was cancelled")
            segment = self.table.execute_query_segmented(
                self.query, token, self.options, self.cancel_event, self.operation_context
            )
            yield from segment.results
            token = segment.continuation_token
            if token is None:
                return
