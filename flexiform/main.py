from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .format_rules import IconRuleSetCache
from .form_options import FormOptions
from .form_providers import HttpFormDataProvider
from .form_service import FormRenderError, LayoutNotAvailableError, RecordFormService


def _parse_bool_env(raw_value: str | None, *, default: bool) -> bool:
    if raw_value is None:
        return default
    value = raw_value.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


ENABLE_VISIBILITY_RULES = _parse_bool_env(os.getenv("FLEXIFORM_ENABLE_VISIBILITY_RULES"), default=True)
ENABLE_CONDITIONAL_FORMATTING = _parse_bool_env(
    os.getenv("FLEXIFORM_ENABLE_CONDITIONAL_FORMATTING"),
    default=True,
)

form_provider = HttpFormDataProvider.from_env()
# One cache per process: icon rule sets are fetched once per identifier.
icon_rule_set_cache = IconRuleSetCache()
form_service = RecordFormService(provider=form_provider, rule_set_cache=icon_rule_set_cache)

app = FastAPI(title="Flexiform Record Form Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class FormOptionsBody(BaseModel):
    excluded_fields: str | list[str] = ""
    default_values: str = ""
    is_read_only: bool = False
    is_new_record: bool = False
    enable_visibility_rules: bool | None = None
    enable_conditional_formatting: bool | None = None
    alt_field: str | None = None


class RenderDocumentBody(BaseModel):
    layout: dict[str, Any] | str
    record_data: dict[str, Any] = Field(default_factory=dict)
    field_metadata: dict[str, dict[str, Any]] = Field(default_factory=dict)
    options: FormOptionsBody = Field(default_factory=FormOptionsBody)


class RenderRecordBody(BaseModel):
    object_api_name: str
    record_id: str | None = None
    options: FormOptionsBody = Field(default_factory=FormOptionsBody)


class ActiveFieldsBody(BaseModel):
    options: FormOptionsBody = Field(default_factory=FormOptionsBody)


def _form_options(body: FormOptionsBody) -> FormOptions:
    return FormOptions(
        excluded_fields=body.excluded_fields,
        default_values=body.default_values,
        is_read_only=body.is_read_only,
        is_new_record=body.is_new_record,
        enable_visibility_rules=(
            ENABLE_VISIBILITY_RULES
            if body.enable_visibility_rules is None
            else body.enable_visibility_rules
        ),
        enable_conditional_formatting=(
            ENABLE_CONDITIONAL_FORMATTING
            if body.enable_conditional_formatting is None
            else body.enable_conditional_formatting
        ),
        alt_field=body.alt_field,
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/forms/render")
async def render_layout_document(body: RenderDocumentBody):
    try:
        view_model = await form_service.render_document(
            body.layout,
            record_data=body.record_data,
            field_metadata=body.field_metadata,
            options=_form_options(body.options),
        )
    except LayoutNotAvailableError:
        raise HTTPException(status_code=404, detail="Layout not available")
    return view_model.to_dict()


@app.post("/api/forms/{layout_name}/render")
async def render_record_form(layout_name: str, body: RenderRecordBody):
    try:
        view_model = await form_service.render_form(
            layout_name,
            object_type=body.object_api_name,
            record_id=body.record_id,
            options=_form_options(body.options),
        )
    except LayoutNotAvailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except FormRenderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return view_model.to_dict()


@app.post("/api/forms/{layout_name}/fields")
async def list_active_fields(layout_name: str, body: ActiveFieldsBody):
    try:
        fields = await form_service.active_field_ids(layout_name, _form_options(body.options))
    except LayoutNotAvailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except FormRenderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"fields": fields, "count": len(fields)}
