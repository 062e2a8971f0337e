"""
In-process Table service.

``InMemoryTableService`` implements the ``Transport`` contract: the client
hands it fully built, signed requests and gets back the HTTP responses the
real service would send. Tests use it to exercise the whole request path
(addressing, authorization, payload formats, batches, retries) without a
network.

Example:
    service = InMemoryTableService()
    client = CloudTableClient(
        "http://127.0.0.1:10002/devstoreaccount1",
        StorageCredentialsAccountAndKey(DEVSTORE_ACCOUNT_NAME, DEVSTORE_ACCOUNT_KEY),
        transport=service,
    )
"""

import base64
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, unquote, urlsplit

from tablezure.auth.exceptions import AuthenticationError
from tablezure.auth.sas import (
    SasToken,
    SasValidator,
    SharedAccessTablePermissions,
    TablePermissions,
    is_sas_request,
)
from tablezure.auth.sharedkey import SharedKeyAuthenticator
from tablezure.core.config_manager import DEFAULT_API_VERSION
from tablezure.emulator.backend import StoredEntity, TableBackend, TableServiceError
from tablezure.emulator.query import ODataParseError, ODataQuery
from tablezure.exceptions import StorageError, TransportError
from tablezure.table.batch import MAX_BATCH_OPERATIONS
from tablezure.table.codec import (
    TablePayloadFormat,
    dump_json,
    encode_query_response,
    encode_response_entity,
    encode_table_listing,
    entity_from_document,
    load_json,
)
from tablezure.table.keys import parse_entity_path
from tablezure.table.models import TableNameValidator
from tablezure.table.multipart import BatchResponsePart, decode_batch_request, encode_batch_response
from tablezure.table.operations import PREFER_NO_CONTENT
from tablezure.table.query import NEXT_PARTITION_KEY_HEADER, NEXT_ROW_KEY_HEADER, NEXT_TABLE_NAME_HEADER
from tablezure.table.service_properties import ServiceProperties
from tablezure.transport.endpoint import SECONDARY_SUFFIX, use_path_style
from tablezure.transport.http import HttpRequest, HttpResponse
from tablezure.transport.retry import StorageLocation

logger = logging.getLogger(__name__)

DEVSTORE_ACCOUNT_NAME = "devstoreaccount1"
DEVSTORE_ACCOUNT_KEY = "Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw=="

_TABLE_RESOURCE = re.compile(r"^Tables\('(?P<name>[^']*)'\)$")
_QUERY_RESOURCE = re.compile(r"^(?P<table>[^(/]+)\(\)$")
_TABLE_NAME_RESOURCE = re.compile(r"^(?P<table>[A-Za-z][A-Za-z0-9]*)$")

_ADD = SharedAccessTablePermissions.ADD
_QUERY = SharedAccessTablePermissions.QUERY
_UPDATE = SharedAccessTablePermissions.UPDATE
_DELETE = SharedAccessTablePermissions.DELETE


@dataclass
class _Fault:
    status: int
    remaining: int
    error_code: str
    location: Optional[StorageLocation] = None
    transport_error: bool = False


@dataclass
class _Call:
    """A request resolved against the account: resource path, decoded query, lowered headers."""
    method: str
    url: str
    resource: str
    base_url: str
    query: Dict[str, str]
    headers: Dict[str, str]
    body: bytes
    secondary: bool
    sas_url: Optional[str] = None
    sas_token: Optional[SasToken] = field(default=None, repr=False)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    @property
    def payload_format(self) -> TablePayloadFormat:
        return TablePayloadFormat.from_accept(self.header("accept"))


class _BatchFailure(Exception):
    def __init__(self, index: int, status: int, code: str, message: str):
        super().__init__(message)
        self.index = index
        self.status = status
        self.code = code
        self.message = message


def _content_type(payload_format: TablePayloadFormat) -> str:
    return f"{payload_format.value};streaming=true;charset=utf-8"


def _encode_continuation(key: str) -> str:
    encoded = base64.b64encode(key.encode("utf-8")).decode("ascii")
    return f"1!{len(encoded)}!{encoded}"


def _decode_continuation(token: str) -> str:
    """
    Raises:
        TableServiceError: If the token was not issued by this service
    """
    try:
        _, length, encoded = token.split("!", 2)
        if int(length) != len(encoded):
            raise ValueError("length mismatch")
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except ValueError as exc:
        raise TableServiceError(f"Invalid continuation token: {token}", 400, "InvalidInput") from exc


class InMemoryTableService:
    """
    Table service emulator that plugs in as the client's transport.

    Attributes:
        backend: Table and entity storage
        requests: Every request received, in order
    """

    def __init__(
        self,
        account_name: str = DEVSTORE_ACCOUNT_NAME,
        account_key: str = DEVSTORE_ACCOUNT_KEY,
        backend: Optional[TableBackend] = None,
        require_auth: bool = True,
        clock: Optional[Callable[[], Any]] = None,
    ):
        self.account_name = account_name
        self.backend = backend or TableBackend()
        self.require_auth = require_auth
        self.authenticator = SharedKeyAuthenticator({account_name: account_key})
        validator_args = {"clock": clock} if clock is not None else {}
        self.sas_validator = SasValidator(account_name, account_key, self.backend.get_policies, **validator_args)
        self.requests: List[HttpRequest] = []
        self._faults: List[_Fault] = []
        self._lock = threading.Lock()

    # ========== Test controls ==========

    @property
    def request_count(self) -> int:
        return len(self.requests)

    def fail_next(
        self,
        status: int,
        count: int = 1,
        error_code: str = "ServerBusy",
        location: Optional[StorageLocation] = None,
    ) -> None:
        """
        Answer the next ``count`` requests (to ``location``, if given) with ``status``.
        """
        with self._lock:
            self._faults.append(_Fault(status, count, error_code, location))

    def fail_next_with_transport_error(self, count: int = 1, location: Optional[StorageLocation] = None) -> None:
        """Make the next ``count`` requests raise ``TransportError``."""
        with self._lock:
            self._faults.append(_Fault(0, count, "", location, transport_error=True))

    def reset(self) -> None:
        with self._lock:
            self.requests.clear()
            self._faults.clear()
        self.backend.reset()

    def _take_fault(self, location: StorageLocation) -> Optional[_Fault]:
        with self._lock:
            for fault in self._faults:
                if fault.location is not None and fault.location != location:
                    continue
                fault.remaining -= 1
                if fault.remaining <= 0:
                    self._faults.remove(fault)
                return fault
        return None

    # ========== Transport ==========

    def send(self, request: HttpRequest) -> HttpResponse:
        """Handle one request."""
        with self._lock:
            self.requests.append(request)
        request_id = str(uuid.uuid4())

        try:
            call = self._resolve(request)
        except TableServiceError as exc:
            return self._error(exc.status, exc.code, exc.message, request_id)

        location = StorageLocation.SECONDARY if call.secondary else StorageLocation.PRIMARY
        fault = self._take_fault(location)
        if fault is not None:
            if fault.transport_error:
                raise TransportError(f"Injected connection failure for {request.method} {call.resource}")
            logger.debug(f"Injected {fault.status} for {request.method} {call.resource}")
            return self._error(fault.status, fault.error_code, "Injected failure.", request_id)

        logger.debug(f"{request.method} {call.resource} ({location.value})")
        try:
            self._authenticate(call)
            if call.secondary and call.method not in ("GET", "HEAD"):
                raise TableServiceError("Write operations are not allowed on the secondary location.",
                                        403, "WriteOperationNotSupportedOnSecondary")
            response = self._dispatch(call)
        except TableServiceError as exc:
            response = self._error(exc.status, exc.code, exc.message, request_id)
        except AuthenticationError as exc:
            response = self._error(403, exc.error_code, exc.message, request_id)
        except StorageError as exc:
            response = self._error(400, exc.error_code, exc.message, request_id)
        except ODataParseError as exc:
            response = self._error(400, "InvalidInput", str(exc), request_id)

        response.headers.setdefault("x-ms-request-id", request_id)
        response.headers.setdefault("x-ms-version", call.header("x-ms-version") or DEFAULT_API_VERSION)
        response.headers.setdefault("Date", formatdate(usegmt=True))
        return response

    def close(self) -> None:
        pass

    # ========== Addressing / auth ==========

    def _locate(self, url: str) -> Tuple[str, str, bool]:
        """
        Split a request URL into (service root, resource path, is secondary).

        Raises:
            TableServiceError: If the URL does not address this account
        """
        parsed = urlsplit(url)
        root = f"{parsed.scheme}://{parsed.netloc}"
        path = parsed.path.lstrip("/")
        secondary = False
        if use_path_style(url):
            account, _, path = path.partition("/")
            root = f"{root}/{account}"
        else:
            account = (parsed.hostname or "").split(".", 1)[0]
            if account.endswith(SECONDARY_SUFFIX):
                account = account[:-len(SECONDARY_SUFFIX)]
                secondary = True
        if account != self.account_name:
            raise TableServiceError(f"The account {account!r} does not exist.", 400, "InvalidUri")
        return root, path, secondary

    def _resolve(self, request: HttpRequest) -> _Call:
        root, resource, secondary = self._locate(request.url)
        query = dict(parse_qsl(urlsplit(request.url).query, keep_blank_values=True))
        return _Call(
            method=request.method.upper(),
            url=request.url,
            resource=resource,
            base_url=root,
            query=query,
            headers={k.lower(): v for k, v in request.headers.items()},
            body=request.body or b"",
            secondary=secondary,
            sas_url=request.url if is_sas_request(request.url) else None,
        )

    def _authenticate(self, call: _Call) -> None:
        if call.sas_url is not None or not self.require_auth:
            # SAS requests are checked per resource by _authorize_sas
            return
        self.authenticator.authenticate(call.method, call.url, call.headers)

    def _authorize_sas(
        self,
        call: _Call,
        table_name: Optional[str],
        permissions: Tuple[SharedAccessTablePermissions, ...],
        partition_key: Optional[str] = None,
        row_key: Optional[str] = None,
    ) -> None:
        if call.sas_url is None:
            return
        if table_name is None:
            raise TableServiceError(
                "A table SAS cannot authorize service or table level operations.",
                403, "AuthorizationResourceTypeMismatch",
            )
        for permission in permissions:
            call.sas_token = self.sas_validator.validate(
                call.sas_url, table_name, permission, partition_key, row_key
            )

    # ========== Routing ==========

    def _dispatch(self, call: _Call) -> HttpResponse:
        resource = call.resource

        if resource == "" and call.query.get("restype") == "service" and call.query.get("comp") == "properties":
            if call.method == "PUT":
                return self._set_service_properties(call)
            if call.method == "GET":
                return self._get_service_properties(call)
            raise TableServiceError("Method not allowed on service properties.", 405, "UnsupportedHttpVerb")

        if resource == "Tables":
            if call.method == "POST":
                return self._create_table(call)
            if call.method == "GET":
                return self._list_tables(call)
        elif resource == "$batch" and call.method == "POST":
            return self._batch(call)

        match = _TABLE_RESOURCE.match(unquote(resource))
        if match:
            if call.method == "GET":
                return self._get_table(call, match.group("name"))
            if call.method == "DELETE":
                return self._delete_table(call, match.group("name"))
            raise TableServiceError("Method not allowed on a table resource.", 405, "UnsupportedHttpVerb")

        match = _QUERY_RESOURCE.match(resource)
        if match and call.method == "GET":
            return self._query_entities(call, match.group("table"))

        match = _TABLE_NAME_RESOURCE.match(resource)
        if match:
            table_name = match.group("table")
            if call.query.get("comp") == "acl":
                if call.method == "PUT":
                    return self._set_acl(call, table_name)
                if call.method == "GET":
                    return self._get_acl(call, table_name)
            elif call.method == "POST":
                return self._insert_entity(call, table_name)
            elif call.method == "GET":
                return self._query_entities(call, table_name)

        table_name, partition_key, row_key = self._parse_entity_resource(resource)
        return self._entity(call, table_name, partition_key, row_key)

    @staticmethod
    def _parse_entity_resource(resource: str) -> Tuple[str, str, str]:
        try:
            return parse_entity_path(resource)
        except UnicodeDecodeError as exc:
            raise TableServiceError(f"The key is not valid UTF-8: {exc}", 400, "InvalidInput") from exc
        except ValueError:
            raise TableServiceError(f"The requested URI does not represent any resource on the server: {resource}",
                                    400, "InvalidUri") from None

    # ========== Tables ==========

    def _create_table(self, call: _Call) -> HttpResponse:
        self._authorize_sas(call, None, ())
        document = load_json(call.body)
        table_name = document.get("TableName") if isinstance(document, dict) else None
        if not table_name:
            raise TableServiceError("TableName is required", 400, "InvalidInput")
        is_valid, error = TableNameValidator.validate(table_name)
        if not is_valid:
            raise TableServiceError(error, 400, "OutOfRangeInput")

        self.backend.create_table(table_name)
        logger.info(f"Created table {table_name}")

        headers = {"Location": f"{call.base_url}/Tables('{table_name}')"}
        if call.header("prefer") == PREFER_NO_CONTENT:
            headers["Preference-Applied"] = PREFER_NO_CONTENT
            return HttpResponse(204, headers)
        body = {"TableName": table_name}
        if call.payload_format != TablePayloadFormat.JSON_NO_METADATA:
            body = {"odata.metadata": f"{call.base_url}/$metadata#Tables/@Element", **body}
        headers["Content-Type"] = _content_type(call.payload_format)
        return HttpResponse(201, headers, dump_json(body))

    def _list_tables(self, call: _Call) -> HttpResponse:
        self._authorize_sas(call, None, ())
        query = ODataQuery(call.query.get("$filter"))
        top = self._top(call)
        names = [name for name in self.backend.list_tables() if query.matches({"TableName": name})]

        next_name = call.query.get("NextTableName")
        if next_name:
            resume = _decode_continuation(next_name).lower()
            names = [name for name in names if name.lower() >= resume]

        headers = {"Content-Type": _content_type(call.payload_format)}
        if top is not None and len(names) > top:
            headers[NEXT_TABLE_NAME_HEADER] = _encode_continuation(names[top])
            names = names[:top]
        return HttpResponse(200, headers, encode_table_listing(names, call.payload_format, call.base_url))

    def _get_table(self, call: _Call, table_name: str) -> HttpResponse:
        self._authorize_sas(call, None, ())
        table = self.backend.get_table(table_name)
        body: Dict[str, Any] = {}
        if call.payload_format != TablePayloadFormat.JSON_NO_METADATA:
            body["odata.metadata"] = f"{call.base_url}/$metadata#Tables/@Element"
        body["TableName"] = table.name
        return HttpResponse(200, {"Content-Type": _content_type(call.payload_format)}, dump_json(body))

    def _delete_table(self, call: _Call, table_name: str) -> HttpResponse:
        self._authorize_sas(call, None, ())
        self.backend.delete_table(table_name)
        logger.info(f"Deleted table {table_name}")
        return HttpResponse(204)

    def _set_acl(self, call: _Call, table_name: str) -> HttpResponse:
        self._authorize_sas(call, None, ())
        self.backend.set_policies(table_name, TablePermissions.from_xml(call.body))
        return HttpResponse(204)

    def _get_acl(self, call: _Call, table_name: str) -> HttpResponse:
        self._authorize_sas(call, None, ())
        self.backend.get_table(table_name)
        permissions = TablePermissions(self.backend.get_policies(table_name))
        return HttpResponse(200, {"Content-Type": "application/xml"}, permissions.to_xml())

    # ========== Service ==========

    def _set_service_properties(self, call: _Call) -> HttpResponse:
        self._authorize_sas(call, None, ())
        self.backend.set_service_properties(ServiceProperties.from_xml(call.body))
        logger.info("Updated service properties")
        return HttpResponse(202)

    def _get_service_properties(self, call: _Call) -> HttpResponse:
        self._authorize_sas(call, None, ())
        properties = self.backend.get_service_properties()
        return HttpResponse(200, {"Content-Type": "application/xml"}, properties.to_xml())

    # ========== Entities ==========

    def _read_body(self, call: _Call, partition_key: Optional[str] = None,
                   row_key: Optional[str] = None) -> Tuple[str, str, Dict[str, Any]]:
        """
        Parse an entity payload; keys in the path take precedence.

        Raises:
            TableServiceError: If keys are missing or disagree with the path
        """
        document = load_json(call.body) if call.body else {}
        if not isinstance(document, dict):
            raise TableServiceError("The entity payload must be a JSON object.", 400, "InvalidInput")
        entity = entity_from_document(document)
        body_pk, body_rk = entity.PartitionKey, entity.RowKey
        if partition_key is not None:
            if (body_pk is not None and body_pk != partition_key) or (body_rk is not None and body_rk != row_key):
                raise TableServiceError("The keys in the payload do not match the request URI.", 400, "InvalidInput")
            body_pk, body_rk = partition_key, row_key
        if body_pk is None or body_rk is None:
            raise TableServiceError("The values are not specified for all properties in the entity.",
                                    400, "PropertiesNeedValue")
        return body_pk, body_rk, entity.properties

    def _render(self, call: _Call, table_name: str, stored: StoredEntity, in_collection: bool = False,
                properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return encode_response_entity(
            table_name,
            stored.partition_key,
            stored.row_key,
            stored.timestamp,
            stored.etag,
            stored.properties if properties is None else properties,
            call.payload_format,
            base_url=call.base_url,
            in_collection=in_collection,
        )

    def _insert_entity(self, call: _Call, table_name: str) -> HttpResponse:
        partition_key, row_key, properties = self._read_body(call)
        self._authorize_sas(call, table_name, (_ADD,), partition_key, row_key)
        table = self.backend.get_table(table_name)
        stored = self.backend.insert_entity(table.name, partition_key, row_key, properties)

        headers = {"ETag": stored.etag}
        if call.header("prefer") == PREFER_NO_CONTENT:
            headers["Preference-Applied"] = PREFER_NO_CONTENT
            return HttpResponse(204, headers)
        headers["Content-Type"] = _content_type(call.payload_format)
        return HttpResponse(201, headers, dump_json(self._render(call, table.name, stored)))

    def _entity(self, call: _Call, table_name: str, partition_key: str, row_key: str) -> HttpResponse:
        if_match = call.header("if-match")

        if call.method == "GET":
            self._authorize_sas(call, table_name, (_QUERY,), partition_key, row_key)
            table = self.backend.get_table(table_name)
            stored = self.backend.get_entity(table.name, partition_key, row_key)
            headers = {"ETag": stored.etag, "Content-Type": _content_type(call.payload_format)}
            return HttpResponse(200, headers, dump_json(self._render(call, table.name, stored)))

        if call.method == "DELETE":
            if not if_match:
                raise TableServiceError("An If-Match header is required.", 400, "MissingRequiredHeader")
            self._authorize_sas(call, table_name, (_DELETE,), partition_key, row_key)
            self.backend.delete_entity(table_name, partition_key, row_key, if_match)
            return HttpResponse(204)

        if call.method in ("PUT", "MERGE"):
            permissions = (_UPDATE,) if if_match else (_ADD, _UPDATE)
            self._authorize_sas(call, table_name, permissions, partition_key, row_key)
            _, _, properties = self._read_body(call, partition_key, row_key)
            write = self.backend.replace_entity if call.method == "PUT" else self.backend.merge_entity
            stored = write(table_name, partition_key, row_key, properties, if_match=if_match, upsert=not if_match)
            return HttpResponse(204, {"ETag": stored.etag})

        raise TableServiceError(f"{call.method} is not supported on an entity.", 405, "UnsupportedHttpVerb")

    def _top(self, call: _Call) -> Optional[int]:
        raw = call.query.get("$top")
        if raw is None:
            return None
        try:
            top = int(raw)
        except ValueError:
            raise TableServiceError(f"$top must be an integer: {raw}", 400, "InvalidInput") from None
        if not 1 <= top <= 1000:
            raise TableServiceError("$top must be between 1 and 1000", 400, "InvalidInput")
        return top

    def _query_entities(self, call: _Call, table_name: str) -> HttpResponse:
        self._authorize_sas(call, table_name, (_QUERY,))
        table = self.backend.get_table(table_name)
        query = ODataQuery(call.query.get("$filter"), call.query.get("$select"), self._top(call))
        token = call.sas_token

        def predicate(stored: StoredEntity) -> bool:
            if token is not None and not SasValidator.key_in_range(token, stored.partition_key, stored.row_key):
                return False
            values = {name: prop.value for name, prop in stored.properties.items()}
            values.update(PartitionKey=stored.partition_key, RowKey=stored.row_key, Timestamp=stored.timestamp)
            return query.matches(values)

        next_pk = call.query.get("NextPartitionKey")
        next_rk = call.query.get("NextRowKey")
        entities, next_key = self.backend.query_entities(
            table.name,
            predicate,
            top=query.top,
            next_partition_key=_decode_continuation(next_pk) if next_pk else None,
            next_row_key=_decode_continuation(next_rk) if next_rk else None,
        )

        documents = [
            self._render(call, table.name, stored, in_collection=True, properties=query.project(stored.properties))
            for stored in entities
        ]
        headers = {"Content-Type": _content_type(call.payload_format)}
        if next_key is not None:
            headers[NEXT_PARTITION_KEY_HEADER] = _encode_continuation(next_key[0])
            headers[NEXT_ROW_KEY_HEADER] = _encode_continuation(next_key[1])
        return HttpResponse(200, headers, encode_query_response(table.name, documents, call.payload_format, call.base_url))

    # ========== Batch ==========

    def _batch(self, call: _Call) -> HttpResponse:
        parts = decode_batch_request(call.header("content-type", ""), call.body)
        if not parts:
            raise TableServiceError("The batch request holds no operations.", 400, "InvalidInput")
        if len(parts) > MAX_BATCH_OPERATIONS:
            raise TableServiceError(
                f"The batch request holds {len(parts)} operations; at most {MAX_BATCH_OPERATIONS} are allowed.",
                400, "InvalidInput",
            )

        sub_calls = []
        for part in parts:
            root, resource, _ = self._locate(part.url)
            sub_calls.append(_Call(
                method=part.method,
                url=part.url,
                resource=resource,
                base_url=root,
                query=dict(parse_qsl(urlsplit(part.url).query, keep_blank_values=True)),
                headers={k.lower(): v for k, v in part.headers.items()},
                body=part.body,
                secondary=call.secondary,
                sas_url=call.sas_url,
            ))

        table_name = self._batch_table(sub_calls)
        try:
            with self.backend.transaction(table_name):
                responses = self._apply_batch(sub_calls)
        except _BatchFailure as failure:
            logger.debug(f"Batch on {table_name} rolled back at operation {failure.index}: {failure.message}")
            body = dump_json({
                "odata.error": {
                    "code": failure.code,
                    "message": {"lang": "en-US", "value": f"{failure.index}:{failure.message}"},
                }
            })
            responses = [BatchResponsePart(
                failure.status, {"Content-Type": _content_type(call.payload_format)}, body
            )]

        content_type, body = encode_batch_response(responses)
        return HttpResponse(202, {"Content-Type": content_type}, body)

    def _batch_table(self, calls: List[_Call]) -> str:
        tables = set()
        for call in calls:
            match = _TABLE_NAME_RESOURCE.match(call.resource)
            if match:
                tables.add(match.group("table").lower())
                continue
            tables.add(self._parse_entity_resource(call.resource)[0].lower())
        if len(tables) != 1:
            raise TableServiceError("All operations in a batch must target the same table.", 400, "InvalidInput")
        return tables.pop()

    def _apply_batch(self, calls: List[_Call]) -> List[BatchResponsePart]:
        """
        Apply every operation; the first failure aborts the whole batch.

        Raises:
            _BatchFailure: Carrying the index of the failed operation
        """
        responses = []
        seen = set()
        for index, sub_call in enumerate(calls):
            try:
                key = self._batch_key(sub_call)
                if seen and key[0] != next(iter(seen))[0]:
                    raise TableServiceError("All commands in a batch must operate on the same partition.",
                                            400, "CommandsInBatchActOnDifferentPartitions")
                if key in seen:
                    raise TableServiceError("The batch request contains multiple changes with the same row key.",
                                            400, "InvalidDuplicateRow")
                seen.add(key)
                response = self._batch_operation(sub_call, key)
            except TableServiceError as exc:
                raise _BatchFailure(index, exc.status, exc.code, exc.message) from exc
            except AuthenticationError as exc:
                raise _BatchFailure(index, 403, exc.error_code, exc.message) from exc
            except StorageError as exc:
                raise _BatchFailure(index, 400, exc.error_code, exc.message) from exc
            responses.append(response)
        return responses

    def _batch_key(self, call: _Call) -> Tuple[str, str]:
        if _TABLE_NAME_RESOURCE.match(call.resource):
            partition_key, row_key, _ = self._read_body(call)
            return partition_key, row_key
        _, partition_key, row_key = self._parse_entity_resource(call.resource)
        return partition_key, row_key

    def _batch_operation(self, call: _Call, key: Tuple[str, str]) -> BatchResponsePart:
        if _TABLE_NAME_RESOURCE.match(call.resource):
            if call.method != "POST":
                raise TableServiceError(f"{call.method} is not supported on a table in a batch.",
                                        400, "InvalidInput")
            response = self._insert_entity(call, call.resource)
        else:
            table_name = self._parse_entity_resource(call.resource)[0]
            response = self._entity(call, table_name, key[0], key[1])
        response.headers.setdefault("DataServiceVersion", "3.0;")
        return BatchResponsePart(response.status, response.headers, response.body)

    # ========== Errors ==========

    @staticmethod
    def _error(status: int, code: str, message: str, request_id: str) -> HttpResponse:
        body = dump_json({
            "odata.error": {
                "code": code,
                "message": {"lang": "en-US", "value": message},
            }
        })
        headers = {
            "Content-Type": _content_type(TablePayloadFormat.JSON_MINIMAL_METADATA),
            "x-ms-request-id": request_id,
        }
        return HttpResponse(status, headers, body)
