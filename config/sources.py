"""
Source system registry for raw ingestion.

Each upstream export tool lands files in object storage under
``{source}/{filename}``. The policy attached to a source decides which of those
files are canonical data files (export tools emit redundant "pass" copies and
spreadsheet side-cars), which row holds the header, and which delimiter the
scanner should use.

Defaults live in this module. Operators can replace them by pointing
``PIPELINE_SOURCES_PATH`` at a JSON or YAML file shaped like::

    sources:
      - name: keap
        title: Keap
        exclude_prefixes: [pass_2_, pass_3_]
        header_rows:
          "Orders*.csv": 2
"""

from __future__ import annotations

import fnmatch
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, MutableMapping, Sequence

import yaml

ALWAYS_EXCLUDED_PREFIX = "__"


@dataclass(frozen=True)
class SourcePolicy:
    """
    Ingestion policy for one source system.

    Attributes:
        name: Stable identifier, also the first path segment of its blobs.
        title: Human readable label used in summaries.
        exclude_prefixes: File-name prefixes (relative to the source folder)
            that mark redundant export passes.
        exclude_suffixes: File-name suffixes that are never data files.
        extensions: Accepted data file extensions.
        header_row: Zero-based index of the header among non-blank rows.
        header_rows: Per-file overrides keyed by glob pattern.
        delimiter: Field delimiter for delimited files.
    """

    name: str
    title: str
    exclude_prefixes: tuple[str, ...] = ()
    exclude_suffixes: tuple[str, ...] = (".csv.xlsx",)
    extensions: tuple[str, ...] = (".csv",)
    header_row: int = 0
    header_rows: Mapping[str, int] = field(default_factory=dict)
    delimiter: str = ","

    def header_row_for(self, filename: str) -> int:
        for pattern, index in self.header_rows.items():
            if fnmatch.fnmatch(filename, pattern):
                return index
        return self.header_row

    def skip_reason(self, relative_name: str) -> str | None:
        """Return why ``relative_name`` is not a canonical data file, or None."""

        lowered = relative_name.lower()
        basename = relative_name.rsplit("/", 1)[-1]
        if basename.startswith(ALWAYS_EXCLUDED_PREFIX):
            return "hidden"
        for suffix in self.exclude_suffixes:
            if lowered.endswith(suffix.lower()):
                return f"excluded suffix {suffix}"
        if not any(lowered.endswith(ext.lower()) for ext in self.extensions):
            return "not a data file"
        for prefix in self.exclude_prefixes:
            if relative_name.startswith(prefix) or basename.startswith(prefix):
                return f"duplicate pass ({prefix})"
        return None


DEFAULT_SOURCES: tuple[SourcePolicy, ...] = (
    SourcePolicy(
        "keap",
        "Keap",
        exclude_prefixes=("pass_2_", "pass_3_"),
        extensions=(".csv", ".xml"),
    ),
    SourcePolicy("donor_direct", "Donor Direct"),
    SourcePolicy("givebutter", "Givebutter"),
    SourcePolicy("stripe", "Stripe"),
    SourcePolicy("bloomerang", "Bloomerang"),
    SourcePolicy("kindful", "Kindful"),
    SourcePolicy("transactions_imports", "Transaction Imports"),
    SourcePolicy("shopify", "Shopify"),
    SourcePolicy("woocommerce", "WooCommerce"),
    SourcePolicy("subbly", "Subbly"),
    SourcePolicy("tickera", "Tickera"),
    SourcePolicy("mailchimp", "Mailchimp"),
    SourcePolicy("csv", "Generic CSV export"),
)


class SourceConfigError(RuntimeError):
    """Raised when a source registry override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise SourceConfigError(f"Source registry file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise SourceConfigError(f"Unable to read source registry file {path}: {exc}") from exc

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)

    if not isinstance(data, Mapping):
        raise SourceConfigError("Source registry must be a JSON/YAML object with a 'sources' list.")
    return dict(data)


def _coerce_strings(value: object | None, *, item_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, Sequence):
        return tuple(str(item) for item in value)
    raise SourceConfigError(f"Expected list for {item_name}, got {type(value).__name__}.")


def _coerce_policy(raw: Mapping[str, object]) -> SourcePolicy:
    name = str(raw.get("name") or "").strip().lower()
    if not name:
        raise SourceConfigError("Each source requires a non-empty name.")
    header_rows_raw = raw.get("header_rows") or {}
    if not isinstance(header_rows_raw, Mapping):
        raise SourceConfigError(f"{name}.header_rows must be a mapping of glob pattern to row index.")
    try:
        header_rows = {str(pattern): int(index) for pattern, index in header_rows_raw.items()}
        header_row = int(raw.get("header_row", 0))
    except (TypeError, ValueError) as exc:
        raise SourceConfigError(f"{name}: header row indexes must be integers.") from exc

    kwargs: dict[str, object] = {
        "exclude_prefixes": _coerce_strings(raw.get("exclude_prefixes"), item_name=f"{name}.exclude_prefixes"),
        "header_row": header_row,
        "header_rows": header_rows,
        "delimiter": str(raw.get("delimiter") or ","),
    }
    if "exclude_suffixes" in raw:
        kwargs["exclude_suffixes"] = _coerce_strings(raw.get("exclude_suffixes"), item_name=f"{name}.exclude_suffixes")
    if "extensions" in raw:
        kwargs["extensions"] = _coerce_strings(raw.get("extensions"), item_name=f"{name}.extensions")
    return SourcePolicy(name, str(raw.get("title") or name), **kwargs)


def load_source_registry(path: str | Path | None = None) -> Mapping[str, SourcePolicy]:
    """
    Return the source registry, replacing the defaults from ``path`` when given.
    """

    if not path:
        return OrderedDict((policy.name, policy) for policy in DEFAULT_SOURCES)

    data = _load_override(Path(path))
    raw_sources = data.get("sources")
    if not isinstance(raw_sources, Sequence) or isinstance(raw_sources, (str, bytes)):
        raise SourceConfigError("Source registry requires a 'sources' list.")
    registry: "OrderedDict[str, SourcePolicy]" = OrderedDict()
    for raw in raw_sources:
        if not isinstance(raw, Mapping):
            raise SourceConfigError("Each source entry must be an object.")
        policy = _coerce_policy(raw)
        if policy.name in registry:
            raise SourceConfigError(f"Source '{policy.name}' is declared twice.")
        registry[policy.name] = policy
    return registry
