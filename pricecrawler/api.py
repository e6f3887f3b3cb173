"""Client for the external data API: source registry, raw price sink and alarms."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, Sequence

import httpx

from .records import RecordKind
from .util import format_date

LOGGER = logging.getLogger(__name__)

ALARM_TYPE_UI_CHANGE = "uc"

_RESULT_FIELDS = """
    ok
    errors {
      field
      messages
    }"""

_SOURCE_MUTATIONS = {
    RecordKind.WHOLESALE: (
        "createOrUpdateSource",
        "mutation createOrUpdateSource($data: NonUniqueSourceMutationInput!) {\n"
        "  createOrUpdateSource(data: $data) {" + _RESULT_FIELDS + "\n    data {\n      id\n      name\n    }\n  }\n}",
    ),
    RecordKind.RETAIL: (
        "createOrUpdateRetailSource",
        "mutation createOrUpdateRetailSource($data: NonUniqueRetailSourceMutationInput!) {\n"
        "  createOrUpdateRetailSource(data: $data) {" + _RESULT_FIELDS + "\n    data {\n      id\n      name\n    }\n  }\n}",
    ),
}

_PUSH_MUTATIONS = {
    RecordKind.WHOLESALE: (
        "bulkCreateRawPrice",
        "mutation bulkCreateRawPrice($data: [FlatRawPriceMutationInput]!) {\n"
        "  bulkCreateRawPrice(data: $data) {" + _RESULT_FIELDS + "\n  }\n}",
    ),
    RecordKind.RETAIL: (
        "bulkCreateRawInventoryPrice",
        "mutation bulkCreateRawInventoryPrice($data: [FlatRawInventoryPriceMutationInput]!) {\n"
        "  bulkCreateRawInventoryPrice(data: $data) {" + _RESULT_FIELDS + "\n  }\n}",
    ),
}

_COMPLETE_MUTATION = (
    "completeSourceBatch",
    "mutation completeSourceBatch($data: SourceBatchMutationInput!) {\n"
    "  completeSourceBatch(data: $data) {" + _RESULT_FIELDS + "\n    data {\n      id\n    }\n  }\n}",
)

_ALARM_MUTATION = (
    "createAlarm",
    "mutation createAlarm($data: AlarmMutationInput!) {\n"
    "  createAlarm(data: $data) {" + _RESULT_FIELDS + "\n    data {\n      id\n    }\n  }\n}",
)


class ApiError(RuntimeError):
    """Raised when the data API rejects a request or cannot be reached."""


class SinkError(RuntimeError):
    """Raised when a batch or completion signal cannot be delivered to a sink."""


@dataclass(slots=True, frozen=True)
class SourceIdentity:
    """Identity of a registered source as returned by the registry."""

    id: Any
    name: str


def source_payload(metadata: Mapping[str, Any], kind: RecordKind) -> dict[str, Any]:
    """Project source metadata onto the registry's input schema for ``kind``."""

    if kind is RecordKind.RETAIL:
        keys = {
            "country": "country",
            "language": "language",
            "url": "url",
            "name": "name",
            "summary": "summary",
            "description": "description",
        }
    else:
        keys = {
            "country": "country",
            "language": "language",
            "name": "name",
            "url": "website",
            "summary": "summary",
            "description": "description",
            "is_history_supported": "isHistorySupported",
            "method": "method",
        }
    return {wire: metadata[key] for key, wire in keys.items() if metadata.get(key) is not None}


class DataApiClient:
    """Async GraphQL client over ``httpx.AsyncClient``."""

    def __init__(
        self,
        endpoint: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._owns_client = client is None
        if client is None:
            headers = {"Accept": "application/json"}
            if token:
                headers["Authorization"] = f"Bearer {token}"
            kwargs: dict[str, Any] = {"timeout": timeout, "headers": headers}
            if transport is not None:
                kwargs["transport"] = transport
            client = httpx.AsyncClient(**kwargs)
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DataApiClient":
        return self

    async def __aexit__(self, *_exc_info) -> None:
        await self.aclose()

    async def execute(self, operation: str, query: str, variables: Mapping[str, Any]) -> Mapping[str, Any]:
        """Run a mutation and return its result object, raising ``ApiError`` unless ``ok``."""

        try:
            response = await self._client.post(self._endpoint, json={"query": query, "variables": dict(variables)})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ApiError(f"{operation} request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(f"{operation} returned a non-JSON response") from exc

        if not isinstance(payload, Mapping):
            raise ApiError(f"{operation} returned an unexpected payload")
        if payload.get("errors"):
            raise ApiError(f"{operation} failed: {payload['errors']}")
        result = (payload.get("data") or {}).get(operation)
        if not isinstance(result, Mapping):
            raise ApiError(f"{operation} returned no result")
        if not result.get("ok"):
            raise ApiError(f"{operation} failed: {result.get('errors')}")
        return result

    async def create_or_update_source(
        self,
        metadata: Mapping[str, Any],
        kind: RecordKind = RecordKind.WHOLESALE,
    ) -> SourceIdentity | None:
        name = metadata.get("name")
        LOGGER.info("Creating/updating source '%s'", name)
        operation, query = _SOURCE_MUTATIONS[kind]
        try:
            result = await self.execute(operation, query, {"data": source_payload(metadata, kind)})
        except ApiError as exc:
            LOGGER.error("Failed to create/update source '%s': %s", name, exc)
            return None

        data = result.get("data") or {}
        if data.get("id") is None:
            LOGGER.error("Registry returned no identifier for source '%s'", name)
            return None
        return SourceIdentity(id=data["id"], name=data.get("name") or name)

    async def push_batch(
        self,
        source_id: Any,
        run_hash: str,
        records: Sequence[Mapping[str, Any]],
        kind: RecordKind = RecordKind.WHOLESALE,
    ) -> int:
        if not records:
            LOGGER.warning("No records to push")
            return 0

        LOGGER.info("Pushing %d records to source '%s' (hash: %s)", len(records), source_id, run_hash)
        operation, query = _PUSH_MUTATIONS[kind]
        try:
            await self.execute(operation, query, {"data": list(records)})
        except ApiError as exc:
            raise SinkError(str(exc)) from exc
        return len(records)

    async def complete(self, source_id: Any, run_hash: str, date: str | None = None) -> Mapping[str, Any]:
        LOGGER.info("Completing source '%s' for '%s'", source_id, run_hash)
        operation, query = _COMPLETE_MUTATION
        try:
            result = await self.execute(
                operation, query, {"data": {"source": source_id, "hash": run_hash, "date": date}}
            )
        except ApiError as exc:
            raise SinkError(str(exc)) from exc
        return result.get("data") or {}

    async def create_alarm(
        self,
        source_id: Any,
        message: str,
        url: str,
        *,
        on_date: date | None = None,
    ) -> Mapping[str, Any] | None:
        LOGGER.info("Creating alarm for UI change regarding '%s'", source_id)
        operation, query = _ALARM_MUTATION
        data = {
            "targetId": source_id,
            "type": ALARM_TYPE_UI_CHANGE,
            "date": format_date(on_date or date.today()),
            "data": json.dumps(
                {"Description": message, "Detail URL": url, "Source ID": source_id},
                ensure_ascii=False,
            ),
        }
        try:
            result = await self.execute(operation, query, {"data": data})
        except ApiError as exc:
            LOGGER.error("Failed to send alarm for source '%s': %s", source_id, exc)
            return None
        return result.get("data") or {}


class GraphQLSink:
    """Adapts :class:`DataApiClient` to the pusher's sink interface for one record kind."""

    def __init__(self, client: DataApiClient, kind: RecordKind = RecordKind.WHOLESALE) -> None:
        self.client = client
        self.kind = kind

    async def push_batch(self, source_id: Any, run_hash: str, records: Sequence[Mapping[str, Any]]) -> int:
        return await self.client.push_batch(source_id, run_hash, records, self.kind)

    async def complete(self, source_id: Any, run_hash: str, date: str | None = None) -> Mapping[str, Any]:
        return await self.client.complete(source_id, run_hash, date)
