"""
Submission payload assembly and response classification.

The target never says plainly whether it stored a response, so acceptance is
inferred from literal heuristics over the raw HTTP status and body. They are
kept together here as pure functions so they can be checked against captured
responses without any network code.
"""
import re
import time
from dataclasses import asdict, dataclass, field

from formrunner.models.target import FieldSpec, FormMeta

SUCCESS_PHRASES = ("your response has been recorded", "thanks for submitting", "thank you")

_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_SUCCESS_RE = re.compile("|".join(re.escape(phrase) for phrase in SUCCESS_PHRASES), re.IGNORECASE)
_FORM_ECHO_RE = re.compile(r"<form[^>]*action=[\"'][^\"']*/formResponse", re.IGNORECASE)
_ALERT_RE = re.compile(r"role=[\"']alert[\"'][^>]*>([^<]{1,200})<", re.IGNORECASE)
_VALIDATION_RE = re.compile(
    r"(required question|please enter|please select|must be|invalid)", re.IGNORECASE
)

MAX_ALERTS = 3
ALERT_MAX_CHARS = 160
BODY_PREVIEW_CHARS = 200

UNAUTHORIZED_MESSAGE = "Unauthorized: form requires sign-in"
FORM_ECHO_MESSAGE = "Response returned input form"
NOT_ACCEPTED_MESSAGE = "Response not accepted"

# FormMeta attribute -> payload key, in the order they are appended
TRANSPORT_TOKENS = (
    ("dlut", "dlut"),
    ("hud", "hud"),
    ("fvv", "fvv"),
    ("partial_response", "partialResponse"),
    ("page_history", "pageHistory"),
    ("token", "token"),
    ("tag", "tag"),
    ("fbzx", "fbzx"),
)


def build_submission_payload(
    record: dict, meta: FormMeta, now_ms: int | None = None
) -> dict[str, str | list[str]]:
    """Merge a content record with the non-empty transport tokens and a fresh timestamp."""
    payload: dict[str, str | list[str]] = dict(record)
    for attr, key in TRANSPORT_TOKENS:
        value = getattr(meta, attr)
        if value:
            payload[key] = value
    payload["submissionTimestamp"] = str(now_ms if now_ms is not None else int(time.time() * 1000))
    return payload


def to_form_params(payload: dict[str, str | list[str]]) -> list[tuple[str, str]]:
    """Flatten to form-encoded pairs. Lists become repeated keys with blank entries dropped."""
    params: list[tuple[str, str]] = []
    for key, value in payload.items():
        if isinstance(value, list):
            for entry in value:
                text = "" if entry is None else str(entry).strip()
                if text:
                    params.append((key, text))
        elif value is not None:
            params.append((key, str(value)))
    return params


@dataclass
class ResponseAnalysis:
    status_code: int
    redirected: bool
    success_text: bool
    form_echo: bool
    alert_snippets: list[str] = field(default_factory=list)
    validation_message: str | None = None

    @property
    def accepted(self) -> bool:
        # a bare status is never enough except for the redirect the target issues on success
        if self.redirected:
            return True
        return self.success_text and not self.form_echo


def extract_alerts(body: str) -> list[str]:
    snippets = [match.group(1).strip() for match in _ALERT_RE.finditer(body)]
    return [snippet[:ALERT_MAX_CHARS] for snippet in snippets if snippet][:MAX_ALERTS]


def analyze_response(status_code: int, body: str) -> ResponseAnalysis:
    visible = _STYLE_RE.sub("", _SCRIPT_RE.sub("", body))
    alerts = extract_alerts(body)
    validation_match = _VALIDATION_RE.search(visible)
    return ResponseAnalysis(
        status_code=status_code,
        redirected=300 <= status_code < 400,
        success_text=bool(_SUCCESS_RE.search(visible)),
        form_echo=bool(_FORM_ECHO_RE.search(body)),
        alert_snippets=alerts,
        validation_message=alerts[0] if alerts else (
            validation_match.group(0) if validation_match else None
        ),
    )


def _has_value(value) -> bool:
    if isinstance(value, list):
        return any(str(entry if entry is not None else "").strip() for entry in value)
    return bool(str(value if value is not None else "").strip())


def missing_entry_ids(payload: dict, fields: list[FieldSpec]) -> list[str]:
    return [spec.entry_id for spec in fields if spec.required and spec.entry_key not in payload]


def empty_required(payload: dict, fields: list[FieldSpec]) -> list[str]:
    return [
        f"{spec.label} ({spec.entry_key})"
        for spec in fields
        if spec.required and spec.entry_key in payload and not _has_value(payload[spec.entry_key])
    ]


@dataclass
class Outcome:
    accepted: bool
    diagnostics: dict
    error: str | None = None


def rejection_message(
    analysis: ResponseAnalysis, missing: list[str], empty: list[str]
) -> str:
    if analysis.status_code == 401:
        return UNAUTHORIZED_MESSAGE
    if analysis.accepted and (missing or empty):
        labels = [f"entry.{entry_id}" for entry_id in missing] + empty
        return f"Required fields missing or empty: {', '.join(labels)}"
    if analysis.form_echo:
        return FORM_ECHO_MESSAGE
    if analysis.validation_message:
        return analysis.validation_message
    return f"{NOT_ACCEPTED_MESSAGE} (HTTP {analysis.status_code})"


def classify(
    status_code: int,
    body: str,
    payload: dict,
    fields: list[FieldSpec],
    location: str | None = None,
) -> Outcome:
    """
    Decide whether one submission was accepted.

    Priority: a 3xx redirect is accepted; otherwise the visible body must carry
    a success phrase and must not re-render the input form. Any required
    entry absent from the payload, or present but blank, downgrades the result
    to rejected whatever the response said.
    """
    analysis = analyze_response(status_code, body)
    missing = missing_entry_ids(payload, fields)
    empty = empty_required(payload, fields)
    accepted = analysis.accepted and not missing and not empty

    diagnostics = asdict(analysis)
    diagnostics.update(
        accepted=accepted,
        location=location,
        missing_entry_ids=missing,
        empty_required=empty,
        payload_keys=list(payload.keys()),
        body_preview=body[:BODY_PREVIEW_CHARS],
    )
    return Outcome(
        accepted=accepted,
        diagnostics=diagnostics,
        error=None if accepted else rejection_message(analysis, missing, empty),
    )


def transport_failure(error: str, payload: dict) -> Outcome:
    return Outcome(
        accepted=False,
        diagnostics={
            "accepted": False,
            "transport_error": error,
            "payload_keys": list(payload.keys()),
        },
        error=error,
    )
