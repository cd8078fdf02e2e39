from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from scan_overlay_pdf.annotation import parse_annotation
from scan_overlay_pdf.compositor import (
    PageGeometry,
    Placed,
    ScaleFactors,
    SkippedDegenerateBox,
    SkippedLowConfidence,
    SkippedZeroWidth,
    compose_page,
    place_word,
    word_font_size,
    word_origin,
    word_target_width,
)
from scan_overlay_pdf.errors import DimensionMismatchError
from scan_overlay_pdf.fonts import HELVETICA
from scan_overlay_pdf.inputs import RasterPage

BOX = [(100, 100), (300, 100), (300, 140), (100, 140)]
GEOMETRY = PageGeometry(595, 842)


class FixedWidthFont:
    name = "Helvetica"
    ascent = 0.718

    def __init__(self, widths: dict[str, float] | None = None, per_char: float = 0.5) -> None:
        self.widths = widths or {}
        self.per_char = per_char
        self.calls: list[tuple[str, float]] = []

    def renderable(self, text: str) -> str:
        return "".join(ch for ch in text if ch.isascii())

    def encode(self, text: str) -> bytes:
        return self.renderable(text).encode("ascii")

    def text_width(self, text: str, font_size: float) -> float:
        self.calls.append((text, font_size))
        if text in self.widths:
            return self.widths[text]
        return len(text) * font_size * self.per_char


def _raster(width: int = 2000, height: int = 3000) -> RasterPage:
    path = Path("scan.png")
    return RasterPage("scan", width, height, path, path)


def _word(text: str, box=BOX, confidence: float = 0.9) -> dict:
    return {
        "confidence": confidence,
        "boundingBox": {"vertices": [{"x": x, "y": y} for x, y in box]},
        "symbols": [{"text": ch} for ch in text],
    }


def _tree(*paragraphs: list[dict]):
    return parse_annotation(
        {
            "fullTextAnnotation": {
                "pages": [
                    {"blocks": [{"paragraphs": [{"words": words} for words in paragraphs]}]}
                ]
            }
        }
    )


def _single_word(text: str, box=BOX, confidence: float = 0.9):
    return next(iter(_tree([_word(text, box, confidence)]).pages[0].blocks[0].paragraphs[0].words))


def test_scale_factors_per_axis():
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)

    assert scale.scale_x == 595 / 2000
    assert scale.scale_y == 842 / 3000


@pytest.mark.parametrize("width, height", [(0, 3000), (2000, 0), (-5, 10)])
def test_scale_factors_reject_non_positive_raster(width: int, height: int):
    with pytest.raises(DimensionMismatchError, match="must be positive"):
        ScaleFactors.for_page(GEOMETRY, width, height)


def test_bonjour_scenario_places_word_on_box():
    font = FixedWidthFont(widths={"Bonjour": 50.0})
    plan = compose_page(_raster(), _tree([_word("Bonjour")]), GEOMETRY, font=font)

    scale_x = 595 / 2000
    scale_y = 842 / 3000
    [placement] = plan.placements
    assert placement.x == pytest.approx(scale_x * 100)
    assert placement.y == pytest.approx(scale_y * 100)
    assert placement.font_size == scale_y * 40
    assert placement.horizontal_scale == pytest.approx((scale_x * 200) / 50)
    assert placement.text == "Bonjour"
    assert placement.invisible is True
    assert font.calls == [("Bonjour", scale_y * 40)]


def test_low_confidence_word_is_skipped():
    font = FixedWidthFont(widths={"Bonjour": 50.0})
    plan = compose_page(_raster(), _tree([_word("Bonjour", confidence=0.4)]), GEOMETRY, font=font)

    assert plan.placements == []
    assert isinstance(plan.outcomes[0], SkippedLowConfidence)
    assert font.calls == []


def test_confidence_threshold_is_inclusive():
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)

    outcome = place_word(_single_word("edge", confidence=0.6), scale, font=FixedWidthFont())

    assert isinstance(outcome, Placed)


def test_confidence_threshold_is_configurable():
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)
    word = _single_word("maybe", confidence=0.7)

    strict = place_word(word, scale, font=FixedWidthFont(), confidence_threshold=0.8)
    loose = place_word(word, scale, font=FixedWidthFont(), confidence_threshold=0.5)

    assert isinstance(strict, SkippedLowConfidence)
    assert isinstance(loose, Placed)


def test_zero_width_measurement_skips_word_without_error():
    font = FixedWidthFont(widths={"???": 0.0})
    plan = compose_page(_raster(), _tree([_word("???")]), GEOMETRY, font=font)

    assert plan.placements == []
    assert isinstance(plan.outcomes[0], SkippedZeroWidth)


def test_unsupported_glyphs_measure_zero_with_helvetica():
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)

    outcome = place_word(_single_word("漢字"), scale, font=HELVETICA)

    assert isinstance(outcome, SkippedZeroWidth)


def test_partially_unsupported_word_is_not_truncated():
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)
    word = _single_word("a漢b")

    outcome = place_word(word, scale, font=HELVETICA)

    assert isinstance(outcome, SkippedZeroWidth)
    assert outcome.word.text == "a漢b"


def test_rendered_width_matches_box_width():
    font = FixedWidthFont(per_char=0.55)
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)
    box = [(40, 500), (713, 510), (713, 561), (40, 551)]

    outcome = place_word(_single_word("registered", box), scale, font=font)

    assert isinstance(outcome, Placed)
    placement = outcome.placement
    natural = font.text_width(placement.text, placement.font_size)
    assert natural * placement.horizontal_scale == pytest.approx(
        scale.scale_x * (713 - 40), abs=1e-9
    )
    assert placement.font_size == scale.scale_y * (561 - 510)


def test_rendered_width_matches_box_width_with_helvetica_metrics():
    fitz = pytest.importorskip("fitz")
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)
    box = [(40, 500), (713, 510), (713, 561), (40, 551)]

    outcome = place_word(_single_word("Déjà", box), scale, font=HELVETICA)

    assert isinstance(outcome, Placed)
    placement = outcome.placement
    assert placement.text == "Déjà"
    natural = fitz.get_text_length(placement.text, fontname="helv", fontsize=placement.font_size)
    assert natural * placement.horizontal_scale == pytest.approx(scale.scale_x * (713 - 40))


def test_transform_is_pure():
    scale = ScaleFactors.for_page(GEOMETRY, 2000, 3000)
    box = _single_word("x").bounding_box

    assert word_origin(box, scale) == word_origin(box, scale)
    assert word_font_size(box, scale) == word_font_size(box, scale)
    assert word_target_width(box, scale) == word_target_width(box, scale)


def test_rotated_box_is_flagged_not_placed(caplog):
    upside_down = [(300, 140), (100, 140), (100, 100), (300, 100)]
    plan = compose_page(_raster(), _tree([_word("flip", upside_down)]), GEOMETRY, font=FixedWidthFont())

    assert plan.placements == []
    assert isinstance(plan.outcomes[0], SkippedDegenerateBox)
    assert "rotated or degenerate" in caplog.text


def test_placements_follow_reading_order():
    tree = _tree(
        [_word("one"), _word("two", confidence=0.1), _word("three")],
        [_word("four")],
    )

    plan = compose_page(_raster(), tree, GEOMETRY, font=FixedWidthFont())

    assert [placement.text for placement in plan.placements] == ["one", "three", "four"]
    assert plan.count(Placed) == 3
    assert plan.count(SkippedLowConfidence) == 1


def test_compose_page_names_raster_on_bad_dimensions():
    with pytest.raises(DimensionMismatchError, match="scan"):
        compose_page(_raster(0, 3000), _tree([_word("x")]), GEOMETRY, font=FixedWidthFont())
