import json
import tempfile

import pytest

from formrunner.db.connection import run_migrations

FORM_ID = "1FAIpQLSdT3stF0rm"
VIEW_URL = f"https://docs.google.com/forms/d/e/{FORM_ID}/viewform"
RESPONSE_URL = f"https://docs.google.com/forms/d/e/{FORM_ID}/formResponse"

SAMPLE_ITEMS = [
    [111, "Full name", None, 0, [[1001, None, 1]]],
    [
        112,
        "Email",
        "We never share it",
        0,
        [[1002, None, 1, None, [[4, 102], "Must be a valid email"]]],
    ],
    [113, "Favorite color", None, 2, [[1003, [["Red"], ["Green"], ["Blue"]], 0]]],
    [114, "Toppings", None, 4, [[1004, [["Cheese"], ["Olives"], ["Peppers"]], 0]]],
    # section header: no entry, dropped
    [115, "About you", None, 8, None],
    [116, "Comments", None, 1, [[1006, None, 0]]],
]

HIDDEN_TOKENS = {"fvv": "1", "fbzx": "-4785329163", "pageHistory": "0", "partialResponse": "[null,null,\"-4785329163\"]"}


def build_load_data(items, title="Customer Survey"):
    return [None, [None, items, None, None, None, None, None, None, title], "/forms", title]


def build_form_html(items=None, title="Customer Survey", page_title=None, tokens=None, action=RESPONSE_URL):
    data = build_load_data(SAMPLE_ITEMS if items is None else items, title)
    hidden = "".join(
        f'<input type="hidden" name="{name}" value="{value.replace(chr(34), "&quot;")}">'
        for name, value in (HIDDEN_TOKENS if tokens is None else tokens).items()
    )
    head = f"<title>{page_title if page_title is not None else title}</title>"
    return (
        f"<html><head>{head}</head><body>"
        f'<form action="{action}" method="POST">{hidden}</form>'
        f"<script>var FB_PUBLIC_LOAD_DATA_ = {json.dumps(data)};\n</script>"
        "</body></html>"
    )


@pytest.fixture
def form_html():
    return build_form_html


@pytest.fixture
def sample_items():
    return [list(item) for item in SAMPLE_ITEMS]


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    run_migrations(path)
    return path
