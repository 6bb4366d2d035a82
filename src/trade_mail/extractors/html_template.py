"""
HTML cell-lookup template for Wealthsimple trade confirmations.

Wealthsimple notifications put each field in either a two-cell table row
(<td>Symbol:</td><td>CNR.TO</td>) or a bold label followed by its value
(<strong>Price:</strong> $150.25). Both layouts are read with lxml.
"""

import logging

from lxml import etree, html

from ..schemas import ParseMethod, RawEmail
from ..schemas.identification import strip_html
from .base import BaseTemplate, TemplateExtraction
from .fields import (
    LABEL_FIELDS,
    domain_matches,
    interpret_labeled_fields,
    looks_like_trade,
    normalize_label,
)

logger = logging.getLogger(__name__)

WEALTHSIMPLE_DOMAINS = ("wealthsimple.com",)

# Inline elements used as field labels
LABEL_TAGS = ("strong", "b", "dt", "label")


def _text(element) -> str:
    return " ".join(element.text_content().split())


def collect_html_fields(html_body: str) -> dict[str, str]:
    """
    Collect label -> value pairs from an HTML body.

    Reads table rows first, then bold/definition labels. The first
    occurrence of a label wins.

    Returns:
        Mapping of normalized label to raw value text
    """
    if not html_body or not html_body.strip():
        return {}
    try:
        doc = html.fromstring(html_body)
    except (etree.ParserError, ValueError) as e:
        logger.debug("Unparseable HTML body: %s", e)
        return {}

    fields: dict[str, str] = {}

    for row in doc.iter("tr"):
        cells = [c for c in row if isinstance(c.tag, str) and c.tag in ("td", "th")]
        if len(cells) < 2:
            continue
        label = normalize_label(_text(cells[0]))
        value = " ".join(_text(c) for c in cells[1:]).strip()
        if label and value:
            fields.setdefault(label, value)

    for element in doc.iter(*LABEL_TAGS):
        raw_label = _text(element)
        label = normalize_label(raw_label)
        if not label or (not raw_label.endswith(":") and label not in LABEL_FIELDS):
            continue

        value = " ".join((element.tail or "").split())
        if not value:
            sibling = element.getnext()
            if sibling is not None:
                value = " ".join((_text(sibling) + " " + (sibling.tail or "")).split())
        if value:
            fields.setdefault(label, value)

    return fields


class WealthsimpleTableTemplate(BaseTemplate):
    """
    Structured cell lookup for Wealthsimple HTML notifications.

    Highest trust: values come from dedicated cells rather than free text.
    """

    @property
    def name(self) -> str:
        return "wealthsimple_html"

    @property
    def priority(self) -> int:
        return 100

    @property
    def method(self) -> ParseMethod:
        return ParseMethod.HTML

    def matches(self, email: RawEmail) -> bool:
        if not email.html_body or not domain_matches(email.from_address, WEALTHSIMPLE_DOMAINS):
            return False
        lowered = email.html_body.lower()
        has_cells = "<td" in lowered or "<strong" in lowered or "<b>" in lowered
        return has_cells and looks_like_trade(f"{email.subject} {strip_html(email.html_body)}")

    def extract(self, email: RawEmail) -> TemplateExtraction:
        fields = collect_html_fields(email.html_body)
        context = f"{email.subject}\n{strip_html(email.html_body)}"
        logger.debug("HTML template found %d labeled cells", len(fields))
        return interpret_labeled_fields(fields, context)
