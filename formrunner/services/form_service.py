import asyncio
import logging
from dataclasses import dataclass, field, replace

import httpx

from formrunner.config import settings
from formrunner.errors import InvalidUrlError, NoFieldsError, NotFoundError, TransportError
from formrunner.forms.extractor import ParsedForm, extract_form
from formrunner.forms.reconcile import reconcile_fields
from formrunner.forms.urls import build_view_url, parse_form_url
from formrunner.models.job import Job
from formrunner.models.target import FieldConfig, FieldSpec, FormMeta, Target
from formrunner.repositories.base import AbstractFormRepository

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept-Language": "en-US,en;q=0.9",
}


def apply_field_configs(fields: list[FieldSpec], configs: list[FieldConfig]) -> list[FieldSpec]:
    by_id = {config.id: config for config in configs}
    configured = []
    for spec in fields:
        config = by_id.get(spec.id)
        if config is not None:
            spec = replace(
                spec,
                strategy=config.strategy,
                fixed_value=config.fixed_value,
                pattern=config.pattern,
                prompt=config.prompt,
                enabled=config.enabled,
                position=config.position,
            )
        configured.append(spec)
    return sorted(configured, key=lambda spec: spec.position)


@dataclass
class TargetSnapshot:
    target: Target
    fields: list[FieldSpec] = field(default_factory=list)
    latest_job: Job | None = None


class FormService:
    def __init__(
        self,
        repository: AbstractFormRepository,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._repository = repository
        self._timeout = timeout if timeout is not None else settings.FETCH_TIMEOUT_SECONDS
        self._transport = transport

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        return await client.get(url, headers=DEFAULT_HEADERS)

    async def fetch_form_html(self, url: str) -> tuple[str, str]:
        """
        GET a form page, following redirects. On a non-2xx answer retry once
        against the canonical view URL. Returns (html, final_url).
        """
        try:
            return await asyncio.wait_for(self._fetch(url), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError("Form refresh timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to load the form URL: {exc}") from exc

    async def _fetch(self, url: str) -> tuple[str, str]:
        async with httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=True, transport=self._transport
        ) as client:
            response = await self._get(client, url)
            final_url = str(response.url) or url

            if not response.is_success:
                parsed = parse_form_url(final_url) or parse_form_url(url)
                if parsed:
                    fallback_url = build_view_url(*parsed)
                    logger.info(
                        "[form] retrying canonical view url | url=%s | status=%d",
                        fallback_url, response.status_code,
                    )
                    response = await self._get(client, fallback_url)
                    final_url = str(response.url) or fallback_url

            if not response.is_success:
                raise TransportError(
                    f"Failed to load the form URL (HTTP {response.status_code})."
                )
            return response.text, final_url

    async def extract(self, url: str) -> ParsedForm:
        """Fetch and parse a form. A form with zero usable fields is a parse failure."""
        html, final_url = await self.fetch_form_html(url)
        source_url = final_url if parse_form_url(final_url) else url
        parsed = extract_form(html, source_url)
        if not parsed.fields:
            raise NoFieldsError("Form has no supported fields.")
        return parsed

    async def load_target(self, url: str) -> TargetSnapshot:
        """
        Fetch a form and store it as a target. A first load stores the extracted
        fields with default configuration; a repeat load reconciles against the
        stored fields so operator configuration survives.
        """
        if not url or not url.startswith("http") or parse_form_url(url) is None:
            raise InvalidUrlError("Enter a valid form URL.")

        parsed = await self.extract(url)
        existing = self._repository.get_target_by_external_id(parsed.external_id)
        target = self._repository.upsert_target(
            Target(
                external_id=parsed.external_id,
                url=url,
                kind=parsed.kind,
                title=parsed.title,
                raw_schema=parsed.snapshot(),
                meta=parsed.meta,
            )
        )

        stored = self._repository.list_fields(target.id) if existing else []
        if stored:
            fields = reconcile_fields(stored, parsed.fields)
            self._repository.update_fields(fields)
            logger.info("[form] target reloaded | target_id=%s | fields=%d", target.id, len(fields))
        else:
            fields = self._repository.replace_fields(target.id, parsed.fields)
            logger.info("[form] target created | target_id=%s | fields=%d", target.id, len(fields))

        return TargetSnapshot(
            target=target,
            fields=fields,
            latest_job=self._repository.get_latest_job(target.id),
        )

    async def refresh_target(self, target: Target) -> tuple[list[FieldSpec], FormMeta]:
        """
        Re-extract a stored target and re-bind its fields to the fresh schema.
        Persists the reconciled fields, the new title and the merged transport tokens.
        """
        view_url = target.meta.view_url or build_view_url(target.external_id, target.kind)
        parsed = await self.extract(view_url)

        stored = self._repository.list_fields(target.id)
        fields = reconcile_fields(stored, parsed.fields)
        meta = target.meta.merged(parsed.meta)

        self._repository.update_fields(fields)
        self._repository.update_target_snapshot(target.id, parsed.title, parsed.snapshot(), meta)
        logger.info(
            "[form] target refreshed | target_id=%s | fields=%d | fresh=%d",
            target.id, len(fields), len(parsed.fields),
        )
        return fields, meta

    def require_target(self, target_id: str) -> Target:
        target = self._repository.get_target(target_id)
        if target is None:
            raise NotFoundError(f"Target not found: {target_id}")
        return target

    def get_target(self, target_id: str) -> TargetSnapshot:
        target = self.require_target(target_id)
        return TargetSnapshot(
            target=target,
            fields=self._repository.list_fields(target_id),
            latest_job=self._repository.get_latest_job(target_id),
        )

    def update_field_configs(self, target_id: str, configs: list[FieldConfig]) -> list[FieldSpec]:
        self.require_target(target_id)
        self._repository.update_field_configs(target_id, configs)
        return self._repository.list_fields(target_id)

    def configured_fields(self, target_id: str, configs: list[FieldConfig]) -> list[FieldSpec]:
        """Stored fields with unsaved operator configuration applied, for previews."""
        self.require_target(target_id)
        return apply_field_configs(self._repository.list_fields(target_id), configs)
