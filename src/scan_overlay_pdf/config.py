from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from .compositor import A4, DEFAULT_CONFIDENCE_THRESHOLD, PAGE_SIZES, PageGeometry


@dataclass(frozen=True)
class OverlayConfig:
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    page_geometry: PageGeometry = A4
    # handed to the annotation provider only
    language_hints: tuple[str, ...] = ()
    workers: int = 1

    def with_overrides(self, **overrides: Any) -> OverlayConfig:
        values = {key: value for key, value in overrides.items() if value is not None}
        if "page_geometry" in values and isinstance(values["page_geometry"], str):
            values["page_geometry"] = page_geometry_by_name(values["page_geometry"])
        if "language_hints" in values:
            values["language_hints"] = tuple(values["language_hints"])
        return _validated(replace(self, **values))


def page_geometry_by_name(name: str) -> PageGeometry:
    try:
        return PAGE_SIZES[name.upper()]
    except KeyError:
        known = ", ".join(sorted(PAGE_SIZES))
        raise ValueError(f"Unknown page size {name!r} (known: {known})") from None


def config_from_mapping(data: Mapping[str, Any]) -> OverlayConfig:
    values: dict[str, Any] = {}

    threshold = data.get("confidenceThreshold", data.get("confidence_threshold"))
    if threshold is not None:
        values["confidence_threshold"] = float(threshold)

    if "pageGeometry" in data:
        geometry = data["pageGeometry"]
        if not isinstance(geometry, Mapping) or "width" not in geometry or "height" not in geometry:
            raise ValueError("pageGeometry must be an object with width and height")
        values["page_geometry"] = PageGeometry(float(geometry["width"]), float(geometry["height"]))
    elif "pageSize" in data:
        values["page_geometry"] = page_geometry_by_name(str(data["pageSize"]))

    hints = data.get("languageHints", data.get("language_hints"))
    if hints is not None:
        if isinstance(hints, str):
            hints = [hints]
        values["language_hints"] = tuple(str(hint) for hint in hints)

    if "workers" in data:
        values["workers"] = int(data["workers"])

    return _validated(OverlayConfig(**values))


def load_config(config_path: str | Path) -> OverlayConfig:
    data = json.loads(Path(config_path).read_text(encoding="utf-8"))
    if not isinstance(data, Mapping):
        raise ValueError(f"Config file must contain a JSON object: {config_path}")
    return config_from_mapping(data)


def _validated(config: OverlayConfig) -> OverlayConfig:
    if not 0.0 <= config.confidence_threshold <= 1.0:
        raise ValueError("confidence threshold must be between 0 and 1")
    if config.page_geometry.width <= 0 or config.page_geometry.height <= 0:
        raise ValueError("page geometry must have positive width and height")
    if config.workers < 1:
        raise ValueError("workers must be >= 1")
    return config
