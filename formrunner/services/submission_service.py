import logging
from urllib.parse import quote, urlencode

import httpx

from formrunner.config import settings
from formrunner.forms.submit import (
    Outcome,
    build_submission_payload,
    classify,
    to_form_params,
    transport_failure,
)
from formrunner.forms.urls import FORMS_ORIGIN
from formrunner.models.target import FieldSpec, FormMeta
from formrunner.services.form_service import DEFAULT_HEADERS

logger = logging.getLogger(__name__)


def build_referer(view_url: str, meta: FormMeta) -> str:
    if not meta.fbzx:
        return view_url
    separator = "&" if "?" in view_url else "?"
    return f"{view_url}{separator}fbzx={quote(meta.fbzx, safe='')}"


class SubmissionService:
    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout if timeout is not None else settings.SUBMIT_TIMEOUT_SECONDS
        self._transport = transport

    async def submit(
        self,
        record: dict,
        meta: FormMeta,
        fields: list[FieldSpec],
        view_url: str,
        response_url: str,
    ) -> tuple[Outcome, dict]:
        """
        POST one content record to the target and classify the answer.
        Returns (outcome, full_payload). Never raises for transport failures.
        """
        payload = build_submission_payload(record, meta)
        headers = {
            **DEFAULT_HEADERS,
            "Content-Type": "application/x-www-form-urlencoded",
            "Origin": FORMS_ORIGIN,
            "Referer": build_referer(view_url, meta),
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(
                    response_url, content=urlencode(to_form_params(payload)), headers=headers
                )
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__
            logger.error("[submit] transport error | url=%s | error=%s", response_url, error)
            return transport_failure(error, payload), payload

        outcome = classify(
            response.status_code,
            response.text,
            payload,
            fields,
            location=response.headers.get("location"),
        )
        if not outcome.accepted:
            logger.warning(
                "[submit] rejected | url=%s | status=%d | error=%s | missing=%s | empty=%s",
                response_url,
                response.status_code,
                outcome.error,
                outcome.diagnostics["missing_entry_ids"],
                outcome.diagnostics["empty_required"],
            )
        return outcome, payload
