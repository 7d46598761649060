"""
Parsers for the control-plane CLI's text reports.

The CLI has no structured output, so everything here works on the printed
tables: `service list` rows start with a green dot, `cache list` rows with a
floppy disk, and `model list` groups variants under a non-indented alias line.
Nothing in this module raises on bad input; lines that do not fit are dropped.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

RESIDENT_MARKER = "🟢"
CACHED_MARKER = "💾"
HEADER_LINES = 2

DEVICES = ("NPU", "GPU", "CPU")
UNKNOWN_DEVICE = "unknown"

_COLUMN_SPLIT = re.compile(r"\s{2,}")
_SERVICE_URL = re.compile(r"http://127\.0\.0\.1:(\d+)/")
_PERCENT = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
_VERSION_TAG = re.compile(r":\d+$")

_REMOVAL_MARKERS = ("Deleted model", "from the cache")

_seen_anomalies = set()


@dataclass(frozen=True)
class ListingEntry:
    """One row of `service list` or `cache list`."""

    alias: str
    model_id: str

    @property
    def device(self) -> str:
        return infer_device(self.model_id)


@dataclass(frozen=True)
class ModelDescriptor:
    alias: str
    model_id: str
    device: str = UNKNOWN_DEVICE
    task: str = ""
    file_size: str = ""
    license: str = ""

    def to_dict(self) -> dict:
        return {
            "alias": self.alias,
            "device": self.device,
            "task": self.task,
            "fileSize": self.file_size,
            "license": self.license,
            "modelId": self.model_id,
        }


@dataclass
class CatalogEntry:
    """An alias from `model list` and its variants, in printed order."""

    alias: str
    variants: List[ModelDescriptor] = field(default_factory=list)


def _note_anomaly(report: str, shape: str, line: str) -> None:
    key = (report, shape)
    if key not in _seen_anomalies:
        _seen_anomalies.add(key)
        logger.warning("Skipping %s line (%s): %r", report, shape, line)
    else:
        logger.debug("Skipping %s line (%s): %r", report, shape, line)


def infer_device(model_id: str) -> str:
    """Device from a `-npu`/`-gpu`/`-cpu` suffix, ignoring a `:N` version tag."""
    base = _VERSION_TAG.sub("", model_id.strip().lower())
    for device in DEVICES:
        if base.endswith("-" + device.lower()):
            return device
    return UNKNOWN_DEVICE


def normalize_device(value: str, model_id: str) -> str:
    upper = (value or "").strip().upper()
    if upper in DEVICES:
        return upper
    return infer_device(model_id)


def _parse_marked(text: str, marker: str, report: str) -> List[ListingEntry]:
    entries = []
    lines = (text or "").strip().split("\n")
    for raw in lines[HEADER_LINES:]:
        line = raw.strip()
        if not line.startswith(marker):
            continue
        parts = line[len(marker):].split()
        if len(parts) < 2:
            _note_anomaly(report, "missing model id", line)
            continue
        # model ids may carry single spaces; keep everything after the alias
        entries.append(ListingEntry(alias=parts[0], model_id=" ".join(parts[1:])))
    return entries


def parse_service_list(text: str) -> List[ListingEntry]:
    """Resident models from `service list`."""
    return _parse_marked(text, RESIDENT_MARKER, "service list")


def parse_cache_list(text: str) -> List[ListingEntry]:
    """Downloaded models from `cache list`."""
    return _parse_marked(text, CACHED_MARKER, "cache list")


def _descriptor(alias: str, columns: List[str]) -> ModelDescriptor:
    device, task, file_size, license_, model_id = columns[:5]
    return ModelDescriptor(
        alias=alias,
        model_id=model_id,
        device=normalize_device(device, model_id),
        task=task,
        file_size=file_size,
        license=license_,
    )


def parse_catalog(text: str) -> List[CatalogEntry]:
    """
    Aliases and their variants from `model list`.

    A non-indented line opens an alias (Alias, Device, Task, File Size,
    License, Model ID); when it carries all six columns it is also the first
    variant. Indented lines that follow are further variants of that alias
    (the same columns without the alias).
    """
    entries: List[CatalogEntry] = []
    for raw in (text or "").split("\n")[HEADER_LINES:]:
        line = raw.strip()
        if not line or line.startswith("-"):
            continue
        columns = [c.strip() for c in _COLUMN_SPLIT.split(line) if c.strip()]
        if not raw[:1].isspace():
            entry = CatalogEntry(alias=columns[0])
            if len(columns) >= 6:
                entry.variants.append(_descriptor(entry.alias, columns[1:6]))
            entries.append(entry)
            continue
        if not entries:
            _note_anomaly("model list", "variant before any alias", line)
            continue
        if len(columns) < 5:
            _note_anomaly("model list", "short variant row", line)
            continue
        current = entries[-1]
        current.variants.append(_descriptor(current.alias, columns))
    return entries


def parse_service_port(text: str) -> Optional[int]:
    """Listening port from `service status`, if one is printed."""
    match = _SERVICE_URL.search(text or "")
    return int(match.group(1)) if match else None


def parse_progress(line: str) -> Optional[float]:
    """Percentage carried by a download progress line, else None."""
    match = _PERCENT.search(line)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def reports_removal(stdout: str) -> bool:
    """True when `cache remove` output says the deletion went through."""
    return any(marker in (stdout or "") for marker in _REMOVAL_MARKERS)
