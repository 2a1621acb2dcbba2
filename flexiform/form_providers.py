from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx


class ProviderError(RuntimeError):
    pass


@dataclass(frozen=True)
class FieldMetadata:
    label: str | None = None
    type: str | None = None
    is_reference_field: bool = False
    reference_target: str | None = None
    referenced_display_value: Any = None
    is_name_field: bool = False

    @property
    def is_reference(self) -> bool:
        return self.is_reference_field or (self.type or "").upper() == "REFERENCE"

    @classmethod
    def from_payload(cls, payload: Any) -> "FieldMetadata":
        if not isinstance(payload, dict):
            return cls()
        label = payload.get("label")
        field_type = payload.get("type")
        reference_target = _first_present(payload, "referenceTarget", "referenceObjectName")
        return cls(
            label=label if isinstance(label, str) and label.strip() else None,
            type=field_type.upper() if isinstance(field_type, str) and field_type else None,
            is_reference_field=bool(payload.get("isReferenceField")),
            reference_target=reference_target if isinstance(reference_target, str) and reference_target else None,
            referenced_display_value=_first_present(payload, "referencedDisplayValue", "referenceNameValue"),
            is_name_field=bool(payload.get("isNameField")),
        )


class FormDataProvider(Protocol):
    async def fetch_layout(self, layout_name: str) -> Any:
        ...

    async def fetch_field_values(
        self,
        object_type: str,
        record_id: str,
        field_ids: list[str],
    ) -> dict[str, Any]:
        ...

    async def fetch_field_metadata(
        self,
        object_type: str,
        field_ids: list[str],
    ) -> dict[str, FieldMetadata]:
        ...

    async def fetch_icon_rule_set(self, identifier: str) -> Any:
        ...


class HttpFormDataProvider:
    def __init__(
        self,
        *,
        base_url: str,
        api_token: str = "",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self.api_token = api_token.strip()
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_env(cls) -> "HttpFormDataProvider":
        return cls(
            base_url=os.getenv("FLEXIFORM_PROVIDER_BASE_URL", ""),
            api_token=os.getenv("FLEXIFORM_PROVIDER_API_TOKEN", ""),
            timeout_seconds=_parse_timeout_seconds(
                os.getenv("FLEXIFORM_REQUEST_TIMEOUT_SECONDS"),
                fallback=30.0,
            ),
        )

    @property
    def configured(self) -> bool:
        return self.base_url.startswith("http")

    async def fetch_layout(self, layout_name: str) -> Any:
        payload = await self._request("GET", f"/layouts/{quote(layout_name, safe='')}")
        # Tooling API records wrap the page definition under "Metadata".
        if isinstance(payload, dict):
            for key in ("Metadata", "metadata"):
                if key in payload:
                    return payload[key]
        return payload

    async def fetch_field_values(
        self,
        object_type: str,
        record_id: str,
        field_ids: list[str],
    ) -> dict[str, Any]:
        payload = await self._request(
            "POST",
            f"/objects/{quote(object_type, safe='')}/records/{quote(record_id, safe='')}/values",
            json_payload={"fieldApiNames": field_ids},
        )
        return normalize_record_values(payload)

    async def fetch_field_metadata(
        self,
        object_type: str,
        field_ids: list[str],
    ) -> dict[str, FieldMetadata]:
        payload = await self._request(
            "POST",
            f"/objects/{quote(object_type, safe='')}/field-metadata",
            json_payload={"fieldApiNames": field_ids},
        )
        return normalize_field_metadata(payload)

    async def fetch_icon_rule_set(self, identifier: str) -> Any:
        payload = await self._request("GET", f"/format-rule-sets/{quote(identifier, safe='')}")
        if not isinstance(payload, dict):
            raise ProviderError(f"Icon rule set '{identifier}' is not an object.")
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
    ) -> Any:
        if not self.configured:
            raise ProviderError("Form data provider is not configured (missing FLEXIFORM_PROVIDER_BASE_URL).")

        headers = {
            "Accept": "application/json",
            "User-Agent": "Flexiform/1.0",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, headers=headers, json=json_payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"HTTP request failed: {exc}") from exc

        if response.status_code >= 400:
            detail = _extract_error_detail(response)
            raise ProviderError(f"{method} {path} failed ({response.status_code}): {detail}")
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"{method} {path} response was not valid JSON: {exc}") from exc


class StaticFormDataProvider:
    """In-memory provider for callers that already hold the documents."""

    def __init__(
        self,
        *,
        layouts: dict[str, Any] | None = None,
        records: dict[str, dict[str, Any]] | None = None,
        field_metadata: dict[str, Any] | None = None,
        icon_rule_sets: dict[str, Any] | None = None,
    ) -> None:
        self.layouts = layouts or {}
        self.records = records or {}
        self.field_metadata = normalize_field_metadata(field_metadata or {})
        self.icon_rule_sets = icon_rule_sets or {}
        self.calls: list[tuple[str, str]] = []

    async def fetch_layout(self, layout_name: str) -> Any:
        self.calls.append(("layout", layout_name))
        if layout_name not in self.layouts:
            raise ProviderError(f"Unknown layout '{layout_name}'.")
        return self.layouts[layout_name]

    async def fetch_field_values(
        self,
        object_type: str,
        record_id: str,
        field_ids: list[str],
    ) -> dict[str, Any]:
        self.calls.append(("values", record_id))
        if record_id not in self.records:
            raise ProviderError(f"Unknown record '{record_id}'.")
        values = normalize_record_values(self.records[record_id])
        wanted = {field_id.lower() for field_id in field_ids}
        return {key: value for key, value in values.items() if key in wanted}

    async def fetch_field_metadata(
        self,
        object_type: str,
        field_ids: list[str],
    ) -> dict[str, FieldMetadata]:
        self.calls.append(("metadata", object_type))
        wanted = {field_id.lower() for field_id in field_ids}
        return {key: value for key, value in self.field_metadata.items() if key in wanted}

    async def fetch_icon_rule_set(self, identifier: str) -> Any:
        self.calls.append(("icon_rule_set", identifier))
        if identifier not in self.icon_rule_sets:
            raise ProviderError(f"Unknown icon rule set '{identifier}'.")
        return self.icon_rule_sets[identifier]


def normalize_record_values(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict) and isinstance(payload.get("values"), dict):
        payload = payload["values"]
    if not isinstance(payload, dict):
        raise ProviderError(f"Expected record values object, got {type(payload).__name__}")
    return {str(key).lower(): value for key, value in payload.items()}


def normalize_field_metadata(payload: Any) -> dict[str, FieldMetadata]:
    if isinstance(payload, dict) and isinstance(payload.get("metadata"), dict):
        payload = payload["metadata"]
    if not isinstance(payload, dict):
        raise ProviderError(f"Expected field metadata object, got {type(payload).__name__}")
    normalized: dict[str, FieldMetadata] = {}
    for key, entry in payload.items():
        normalized[str(key).lower()] = entry if isinstance(entry, FieldMetadata) else FieldMetadata.from_payload(entry)
    return normalized


def _parse_timeout_seconds(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        parsed = float(raw_value)
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message:
            return message
        detail = payload.get("detail")
        if isinstance(detail, str) and detail:
            return detail
    elif isinstance(payload, list) and payload and isinstance(payload[0], dict):
        # Salesforce REST errors arrive as [{"message": ..., "errorCode": ...}].
        message = payload[0].get("message")
        if isinstance(message, str) and message:
            return message
    body = response.text.strip()
    return body[:300] if body else "Unknown provider error"
