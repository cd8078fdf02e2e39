from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Protocol, Sequence, Union

from .annotation import AnnotationTree, Vertex, Word, iter_words, load_annotation
from .errors import DimensionMismatchError, MalformedAnnotationError
from .fonts import HELVETICA
from .inputs import PageInput, RasterPage

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.6

Box = tuple[Vertex, Vertex, Vertex, Vertex]


class Font(Protocol):
    name: str
    ascent: float

    def renderable(self, text: str) -> str: ...

    def encode(self, text: str) -> bytes: ...

    def text_width(self, text: str, font_size: float) -> float: ...


@dataclass(frozen=True)
class PageGeometry:
    width: float
    height: float


A4 = PageGeometry(595.28, 841.89)
LETTER = PageGeometry(612.0, 792.0)
PAGE_SIZES: dict[str, PageGeometry] = {"A4": A4, "LETTER": LETTER}


@dataclass(frozen=True)
class ScaleFactors:
    scale_x: float
    scale_y: float

    @classmethod
    def for_page(cls, geometry: PageGeometry, pixel_width: int, pixel_height: int) -> ScaleFactors:
        if pixel_width <= 0 or pixel_height <= 0:
            raise DimensionMismatchError(
                f"Raster dimensions must be positive, got {pixel_width}x{pixel_height}"
            )
        if geometry.width <= 0 or geometry.height <= 0:
            raise DimensionMismatchError(
                f"Page dimensions must be positive, got {geometry.width}x{geometry.height}"
            )
        return cls(geometry.width / pixel_width, geometry.height / pixel_height)


@dataclass(frozen=True)
class TextPlacement:
    x: float
    y: float
    font_size: float
    horizontal_scale: float
    text: str
    invisible: bool = True


@dataclass(frozen=True)
class Placed:
    placement: TextPlacement


@dataclass(frozen=True)
class SkippedLowConfidence:
    word: Word


@dataclass(frozen=True)
class SkippedZeroWidth:
    word: Word


@dataclass(frozen=True)
class SkippedDegenerateBox:
    word: Word


WordOutcome = Union[Placed, SkippedLowConfidence, SkippedZeroWidth, SkippedDegenerateBox]


@dataclass(frozen=True)
class PagePlan:
    raster: RasterPage
    geometry: PageGeometry
    scale: ScaleFactors
    outcomes: tuple[WordOutcome, ...]

    @property
    def placements(self) -> list[TextPlacement]:
        return [outcome.placement for outcome in self.outcomes if isinstance(outcome, Placed)]

    def count(self, outcome_type: type) -> int:
        return sum(1 for outcome in self.outcomes if isinstance(outcome, outcome_type))


def word_font_size(box: Box, scale: ScaleFactors) -> float:
    return scale.scale_y * (box[2].y - box[1].y)


def word_origin(box: Box, scale: ScaleFactors) -> tuple[float, float]:
    return scale.scale_x * box[0].x, scale.scale_y * box[0].y


def word_target_width(box: Box, scale: ScaleFactors) -> float:
    return scale.scale_x * (box[1].x - box[0].x)


def place_word(
    word: Word,
    scale: ScaleFactors,
    *,
    font: Font = HELVETICA,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> WordOutcome:
    """Decide how a single word lands on the page.

    The text run is sized from the right edge of the box and then stretched
    horizontally, anchored at the top-left vertex, until its rendered width
    matches the top edge of the box.
    """
    if word.confidence < confidence_threshold:
        return SkippedLowConfidence(word)

    box = word.bounding_box
    font_size = word_font_size(box, scale)
    target_width = word_target_width(box, scale)
    if font_size <= 0 or target_width <= 0:
        logger.warning(
            "Skipping word %r: box %s is rotated or degenerate", word.text, _format_box(box)
        )
        return SkippedDegenerateBox(word)

    text = word.text
    # a run the font can only partly draw would put a different word on the page
    if not text or font.renderable(text) != text:
        natural_width = 0.0
    else:
        natural_width = font.text_width(text, font_size)
    if natural_width == 0:
        return SkippedZeroWidth(word)

    x, y = word_origin(box, scale)
    return Placed(
        TextPlacement(
            x=x,
            y=y,
            font_size=font_size,
            horizontal_scale=target_width / natural_width,
            text=text,
        )
    )


def compose_page(
    raster: RasterPage,
    tree: AnnotationTree,
    geometry: PageGeometry,
    *,
    font: Font = HELVETICA,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> PagePlan:
    try:
        scale = ScaleFactors.for_page(geometry, raster.pixel_width, raster.pixel_height)
    except DimensionMismatchError as exc:
        raise DimensionMismatchError(f"{raster.name}: {exc}") from exc
    outcomes = tuple(
        place_word(word, scale, font=font, confidence_threshold=confidence_threshold)
        for word in iter_words(tree)
    )
    plan = PagePlan(raster=raster, geometry=geometry, scale=scale, outcomes=outcomes)

    for outcome in outcomes:
        if isinstance(outcome, (SkippedLowConfidence, SkippedZeroWidth)):
            logger.debug(
                "%s: %s %r (confidence %.2f)",
                raster.name,
                type(outcome).__name__,
                outcome.word.text,
                outcome.word.confidence,
            )
    logger.info(
        "%s: placed %d of %d words (%d low confidence, %d zero width, %d degenerate)",
        raster.name,
        plan.count(Placed),
        len(outcomes),
        plan.count(SkippedLowConfidence),
        plan.count(SkippedZeroWidth),
        plan.count(SkippedDegenerateBox),
    )
    return plan


def compose_pages(
    pages: Sequence[PageInput],
    geometry: PageGeometry,
    *,
    font: Font = HELVETICA,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    workers: int = 1,
    skip_failed: bool = False,
) -> list[PagePlan]:
    """Compose every page, returning plans in the order of ``pages``.

    Pages share no state, so with ``workers > 1`` they are composed in a
    process pool and re-ordered afterwards. With ``skip_failed`` a page whose
    annotation or raster cannot be trusted is logged and left out instead of
    aborting the run.
    """
    if workers < 1:
        raise ValueError("workers must be >= 1")

    results: dict[int, PagePlan | None] = {}
    if workers == 1 or len(pages) <= 1:
        for index, page in enumerate(pages):
            results[index] = _compose_or_skip(
                page, geometry, font, confidence_threshold, skip_failed
            )
    else:
        with ProcessPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(
                    _compose_or_skip, page, geometry, font, confidence_threshold, skip_failed
                ): index
                for index, page in enumerate(pages)
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

    ordered = [results[index] for index in range(len(pages))]
    return [plan for plan in ordered if plan is not None]


def _compose_or_skip(
    page: PageInput,
    geometry: PageGeometry,
    font: Font,
    confidence_threshold: float,
    skip_failed: bool,
) -> PagePlan | None:
    try:
        return _compose_page_input(page, geometry, font, confidence_threshold)
    except (MalformedAnnotationError, DimensionMismatchError) as exc:
        if not skip_failed:
            raise
        logger.error("Skipping page %s: %s", page.name, exc)
        return None


def _compose_page_input(
    page: PageInput,
    geometry: PageGeometry,
    font: Font,
    confidence_threshold: float,
) -> PagePlan:
    raster = page.read_raster()
    try:
        tree = load_annotation(page.annotation_path)
    except MalformedAnnotationError as exc:
        raise MalformedAnnotationError(f"{page.name}: {exc}") from exc
    return compose_page(
        raster, tree, geometry, font=font, confidence_threshold=confidence_threshold
    )


def _format_box(box: Box) -> str:
    return " ".join(f"({vertex.x:g},{vertex.y:g})" for vertex in box)
