from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import DimensionMismatchError

_DIGITS_RE = re.compile(r"(\d+)")


@dataclass(frozen=True)
class RasterPage:
    name: str
    pixel_width: int
    pixel_height: int
    image_path: Path
    background_path: Path


@dataclass(frozen=True)
class PageInput:
    name: str
    image_path: Path
    background_path: Path | None
    annotation_path: Path

    def read_raster(self) -> RasterPage:
        return read_raster(self.image_path, self.background_path, name=self.name)


def natural_sort_key(name: str) -> tuple:
    """Sort key that orders embedded numbers numerically and ignores case and accents.

    ``"Image (2)"`` sorts before ``"Image (10)"`` and ``"École"`` groups with
    ``"Ecole"``. The raw name is the final
    tie-breaker so names differing only in case still have a fixed order.
    """
    parts: list[tuple[int, int | str]] = []
    for index, chunk in enumerate(_DIGITS_RE.split(name)):
        if index % 2:
            parts.append((0, int(chunk)))
        elif chunk:
            parts.append((1, _base_letters(chunk)))
    return tuple(parts), name


def _base_letters(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def read_raster(
    image_path: Path,
    background_path: Path | None = None,
    *,
    name: str | None = None,
) -> RasterPage:
    from PIL import Image

    image_path = Path(image_path)
    if not image_path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")
    if background_path is not None and not Path(background_path).exists():
        raise FileNotFoundError(f"Background image not found: {background_path}")

    try:
        with Image.open(image_path) as image:
            width, height = image.size
    except OSError as exc:
        # also covers directories and unreadable files
        raise DimensionMismatchError(f"Cannot read image dimensions: {image_path}") from exc

    if width <= 0 or height <= 0:
        raise DimensionMismatchError(
            f"Image has non-positive dimensions {width}x{height}: {image_path}"
        )

    return RasterPage(
        name=name or image_path.stem,
        pixel_width=width,
        pixel_height=height,
        image_path=image_path,
        background_path=Path(background_path) if background_path is not None else image_path,
    )


def discover_pages(
    image_dir: Path,
    annotation_dir: Path | None = None,
    *,
    image_suffix: str = ".png",
    background_suffix: str | None = None,
) -> list[PageInput]:
    """Pair every ``<name><image_suffix>.json`` annotation with its image.

    The result is sorted with :func:`natural_sort_key` on ``<name>``. Image
    dimensions are read later, per page, so one broken scan only fails its
    own page.
    """
    image_dir = Path(image_dir)
    annotation_dir = Path(annotation_dir) if annotation_dir is not None else image_dir
    if not image_dir.is_dir():
        raise FileNotFoundError(f"Image directory not found: {image_dir}")
    if not annotation_dir.is_dir():
        raise FileNotFoundError(f"Annotation directory not found: {annotation_dir}")

    annotation_suffix = f"{image_suffix}.json"
    names = [
        path.name[: -len(annotation_suffix)]
        for path in annotation_dir.iterdir()
        if path.is_file() and path.name.endswith(annotation_suffix)
    ]
    names.sort(key=natural_sort_key)

    pages: list[PageInput] = []
    for name in names:
        image_path = image_dir / f"{name}{image_suffix}"
        background = image_dir / f"{name}{background_suffix}" if background_suffix else None
        if not image_path.exists():
            raise FileNotFoundError(f"Image not found: {image_path}")
        if background is not None and not background.exists():
            raise FileNotFoundError(f"Background image not found: {background}")
        pages.append(
            PageInput(
                name=name,
                image_path=image_path,
                background_path=background,
                annotation_path=annotation_dir / f"{name}{annotation_suffix}",
            )
        )
    return pages


def select_pages(
    pages: Sequence[PageInput],
    first: int | None = None,
    last: int | None = None,
) -> list[PageInput]:
    """Keep the 1-based inclusive range ``first..last`` of already-sorted pages."""
    if first is not None and first < 1:
        raise ValueError("--first must be >= 1")
    if last is not None and last < 1:
        raise ValueError("--last must be >= 1")
    if first is not None and last is not None and first > last:
        raise ValueError("--first must not be greater than --last")

    start = (first or 1) - 1
    stop = last if last is not None else len(pages)
    return list(pages[start:stop])
