"""HTML-to-text extraction and "key: value" record parsing for mail bodies."""

from __future__ import annotations

import logging

from bs4 import BeautifulSoup


logger = logging.getLogger(__name__)

NON_CONTENT_TAGS = ("style", "script", "img", "link", "meta")
PRESENTATIONAL_ATTRIBUTES = ("style", "class", "width", "height", "border")


def clean_document(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html or "", "html.parser")

    for element in soup.find_all(list(NON_CONTENT_TAGS)):
        element.decompose()

    for element in soup.find_all(True):
        for attribute in PRESENTATIONAL_ATTRIBUTES:
            element.attrs.pop(attribute, None)

    return soup


def sanitize_html(html: str) -> str:
    return str(clean_document(html))


def extract_text(html: str) -> str:
    if not html or not html.strip():
        return ""
    return clean_document(html).get_text().strip()


def parse_records(text: str) -> dict[str, str]:
    # Split on the first colon only.
    records: dict[str, str] = {}
    for line in (text or "").split("\n"):
        key, separator, value = line.partition(":")
        if not separator:
            continue
        key = key.strip()
        value = value.strip()
        if not key or not value:
            continue
        if key in records:
            logger.debug("parse_records: key %r repeated, keeping later value", key)
        records[key] = value
    return records
