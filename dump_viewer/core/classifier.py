"""RecordClassifier: raw dump HTML -> DumpRecord, with a no-loss fallback path."""

from __future__ import annotations

import html as html_lib
import itertools
import json
import logging
import random
import re
import string
import time
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from ..patterns import (
    DATA_TYPE_MARKERS,
    DEFAULT_CATEGORY_KEYWORDS,
    EXPANDABLE_MARKERS,
    SOURCE_INFO_RE,
    SOURCE_TEXT_RE,
)
from ..types import (
    ClassifierConfig,
    DumpCategory,
    DumpMetadata,
    DumpRecord,
    DumpSource,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


class RecordClassifier:
    """Turn one framed HTML record into a DumpRecord.

    Source resolution order: explicit context, ``SOURCE_INFO`` marker
    comment, ``data-*`` attributes, then ``unknown``/0.

    Category: with ``categorize`` off every record is ``DUMP``. With it on,
    keyword tables are checked in order and the first hit wins.

    ``classify`` never raises. Any internal failure yields a fallback record
    that wraps the escaped raw input.
    """

    def __init__(
        self,
        config: ClassifierConfig | None = None,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        self.config = config or ClassifierConfig()
        self._log = log or logger
        self._source_info_re = re.compile(SOURCE_INFO_RE)
        self._source_text_re = re.compile(SOURCE_TEXT_RE)
        self._attr_res = {
            "file": re.compile(r'data-file="([^"]+)"'),
            "line": re.compile(r'data-line="(\d+)"'),
            "function": re.compile(r'data-function="([^"]+)"'),
            "class": re.compile(r'data-class="([^"]+)"'),
        }
        keywords = self.config.category_keywords or DEFAULT_CATEGORY_KEYWORDS
        self._keywords: list[tuple[DumpCategory, list[str]]] = [
            (DumpCategory.parse(name), [w.lower() for w in words])
            for name, words in keywords.items()
        ]
        self._counter = itertools.count()
        self.processed = 0
        self.failed = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def classify(self, raw_html: Any, context: Mapping | None = None) -> DumpRecord:
        """Classify *raw_html*. Always returns a record."""
        try:
            record = self._classify(raw_html, context)
        except Exception as e:
            self.failed += 1
            self._log.warning("Dump classification failed, using fallback: %s", e)
            return self._fallback(raw_html, context)
        self.processed += 1
        return record

    def stats(self) -> dict:
        return {"processedDumps": self.processed, "failedProcessing": self.failed}

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _classify(self, raw_html: Any, context: Mapping | None) -> DumpRecord:
        if not isinstance(raw_html, str):
            raise TypeError(f"expected str payload, got {type(raw_html).__name__}")
        return DumpRecord(
            id=self.generate_id(),
            timestamp=self._timestamp(context),
            source=self.extract_source(raw_html, context),
            category=self.categorize(raw_html, context),
            content=self._source_info_re.sub("", raw_html).strip(),
            raw_data=raw_html,
            metadata=self._metadata(raw_html, context),
        )

    def extract_source(self, raw_html: str, context: Mapping | None = None) -> DumpSource:
        if context:
            return _source_from_context(context)

        marker = self._source_info_re.search(raw_html)
        if marker:
            parsed = self._source_text_re.match(marker.group(1).strip())
            if parsed:
                return DumpSource(file=parsed.group(1), line=int(parsed.group(2)))

        attrs = {key: rx.search(raw_html) for key, rx in self._attr_res.items()}
        return DumpSource(
            file=attrs["file"].group(1) if attrs["file"] else "unknown",
            line=int(attrs["line"].group(1)) if attrs["line"] else 0,
            function=attrs["function"].group(1) if attrs["function"] else None,
            class_name=attrs["class"].group(1) if attrs["class"] else None,
        )

    def categorize(self, raw_html: str, context: Mapping | None = None) -> DumpCategory:
        if not self.config.categorize:
            return DumpCategory.DUMP

        combined = raw_html.lower()
        if context:
            combined += " " + json.dumps(dict(context), default=str).lower()
        for category, words in self._keywords:
            if any(w in combined for w in words):
                return category
        return DumpCategory.DUMP

    def generate_id(self) -> str:
        """``dump_<ms>_<9 base36>_<seq>``; unique per instance, not cryptographic."""
        suffix = "".join(random.choices(_ID_ALPHABET, k=9))
        return f"dump_{int(time.time() * 1000)}_{suffix}_{next(self._counter)}"

    def _timestamp(self, context: Mapping | None) -> datetime:
        upstream = context.get("timestamp") if context else None
        if isinstance(upstream, datetime):
            return upstream
        if isinstance(upstream, str) and upstream:
            return parse_timestamp(upstream)
        return utc_now()

    def _metadata(self, raw_html: str, context: Mapping | None) -> DumpMetadata:
        source_context = None
        if context and context.get("function"):
            cls = context.get("class")
            source_context = f"{cls}::{context['function']}()" if cls else f"{context['function']}()"
        return DumpMetadata(
            size=len(raw_html),
            has_expandable_content=any(m in raw_html for m in EXPANDABLE_MARKERS),
            data_type=_data_type(raw_html),
            source_context=source_context,
        )

    def _fallback(self, raw_html: Any, context: Mapping | None) -> DumpRecord:
        text = raw_html if isinstance(raw_html, str) else _coerce_text(raw_html)
        try:
            source = _source_from_context(context) if context else DumpSource()
        except (TypeError, ValueError):
            source = DumpSource()
        return DumpRecord(
            id=self.generate_id(),
            timestamp=utc_now(),
            source=source,
            category=DumpCategory.DUMP,
            content=(
                '<div class="sf-dump sf-dump-fallback"><pre>'
                f"{html_lib.escape(text, quote=True)}</pre></div>"
            ),
            raw_data=text,
            metadata=DumpMetadata(size=len(text)),
        )


def _source_from_context(context: Mapping) -> DumpSource:
    line = context.get("line") or 0
    return DumpSource(
        file=str(context.get("file") or "unknown"),
        line=max(int(line), 0),
        function=context.get("function"),
        class_name=context.get("class"),
    )


def _data_type(raw_html: str) -> str:
    for marker, name in DATA_TYPE_MARKERS:
        if marker in raw_html:
            return name
    if "{" in raw_html and "}" in raw_html:
        return "object"
    if "[" in raw_html and "]" in raw_html:
        return "array"
    if '"' in raw_html or "'" in raw_html:
        return "string"
    if re.search(r"\d", raw_html):
        return "number"
    return "mixed"


def _coerce_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if value is None:
        return ""
    return str(value)
