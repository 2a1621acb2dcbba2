from __future__ import annotations

import logging
from typing import Any, Mapping

from .form_assembler import FormAssembler, FormViewModel
from .form_options import DEFAULT_VOCABULARY, FormOptions, FormVocabulary, is_new_record_id
from .form_providers import FieldMetadata, FormDataProvider, ProviderError, normalize_field_metadata
from .format_rules import FormatEvaluator, IconRuleSetCache
from .layout_parser import Section, collect_field_ids, parse_layout_document

logger = logging.getLogger(__name__)


class FormRenderError(RuntimeError):
    pass


class LayoutNotAvailableError(FormRenderError):
    pass


class RecordFormService:
    def __init__(
        self,
        *,
        provider: FormDataProvider,
        vocabulary: FormVocabulary = DEFAULT_VOCABULARY,
        rule_set_cache: IconRuleSetCache | None = None,
    ) -> None:
        self.provider = provider
        self.vocabulary = vocabulary
        self.rule_set_cache = rule_set_cache if rule_set_cache is not None else IconRuleSetCache()
        self.assembler = FormAssembler(
            vocabulary=vocabulary,
            format_evaluator=FormatEvaluator(provider, cache=self.rule_set_cache),
        )

    async def load_sections(self, layout_name: str) -> dict[str, Section]:
        try:
            document = await self.provider.fetch_layout(layout_name)
        except ProviderError as exc:
            raise FormRenderError(f"Failed to load layout '{layout_name}': {exc}") from exc

        sections = parse_layout_document(document)
        if not sections:
            raise LayoutNotAvailableError(f"Layout '{layout_name}' has no renderable sections.")
        return sections

    async def active_field_ids(self, layout_name: str, options: FormOptions | None = None) -> list[str]:
        options = options or FormOptions()
        sections = await self.load_sections(layout_name)
        return collect_field_ids(sections, excluded=options.excluded_field_set(self.vocabulary))

    async def render_form(
        self,
        layout_name: str,
        *,
        object_type: str,
        record_id: str | None = None,
        options: FormOptions | None = None,
    ) -> FormViewModel:
        options = (options or FormOptions()).model_copy()
        options.is_new_record = options.is_new_record or is_new_record_id(record_id)

        sections = await self.load_sections(layout_name)
        field_ids = collect_field_ids(sections, excluded=options.excluded_field_set(self.vocabulary))
        logger.debug("Active fields for %s: %s", layout_name, field_ids)

        if options.is_new_record:
            record_data = dict(options.parsed_default_values().lowercase)
        else:
            record_data = await self._fetch_values(object_type, record_id or "", field_ids)
        field_metadata = await self._fetch_metadata(object_type, field_ids)

        view_model = await self.assembler.assemble(
            sections,
            record_data,
            field_metadata=field_metadata,
            options=options,
        )

        alt_record_id = self._alt_record_id(options, view_model.record_data, current_record_id=record_id)
        if alt_record_id:
            logger.info("Re-fetching field values using %s value %s", options.alt_field, alt_record_id)
            record_data = await self._fetch_values(object_type, alt_record_id, field_ids)
            view_model = await self.assembler.assemble(
                sections,
                record_data,
                field_metadata=field_metadata,
                options=options,
            )
        return view_model

    async def render_document(
        self,
        document: Any,
        *,
        record_data: Mapping[str, Any] | None = None,
        field_metadata: Mapping[str, Any] | None = None,
        options: FormOptions | None = None,
    ) -> FormViewModel:
        sections = parse_layout_document(document)
        if not sections:
            raise LayoutNotAvailableError("Layout document has no renderable sections.")
        return await self.assembler.assemble(
            sections,
            {str(key).lower(): value for key, value in (record_data or {}).items()},
            field_metadata=normalize_field_metadata(dict(field_metadata or {})),
            options=options,
        )

    async def _fetch_values(self, object_type: str, record_id: str, field_ids: list[str]) -> dict[str, Any]:
        try:
            return await self.provider.fetch_field_values(object_type, record_id, field_ids)
        except ProviderError as exc:
            raise FormRenderError(f"Failed to load values for record '{record_id}': {exc}") from exc

    async def _fetch_metadata(self, object_type: str, field_ids: list[str]) -> dict[str, FieldMetadata]:
        if not field_ids:
            return {}
        try:
            return await self.provider.fetch_field_metadata(object_type, field_ids)
        except ProviderError as exc:
            raise FormRenderError(f"Failed to load field metadata for '{object_type}': {exc}") from exc

    @staticmethod
    def _alt_record_id(
        options: FormOptions,
        record_data: Mapping[str, Any],
        *,
        current_record_id: str | None,
    ) -> str | None:
        if not options.alt_field:
            return None
        alt_value = record_data.get(options.alt_field.lower())
        if not isinstance(alt_value, str) or not alt_value.strip():
            return None
        if alt_value == current_record_id:
            return None
        return alt_value
