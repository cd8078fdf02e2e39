from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from scan_overlay_pdf.annotation import Vertex, iter_words, load_annotation, parse_annotation
from scan_overlay_pdf.errors import MalformedAnnotationError


def _word(text: str, confidence: float = 0.9, vertices: list[dict] | None = None) -> dict:
    if vertices is None:
        vertices = [{"x": 10, "y": 20}, {"x": 60, "y": 20}, {"x": 60, "y": 40}, {"x": 10, "y": 40}]
    return {
        "confidence": confidence,
        "boundingBox": {"vertices": vertices},
        "symbols": [{"text": ch} for ch in text],
    }


def test_parse_annotation_keeps_reading_order():
    data = {
        "fullTextAnnotation": {
            "pages": [
                {
                    "blocks": [
                        {"paragraphs": [{"words": [_word("Le"), _word("chat")]}, {"words": [_word("dort")]}]},
                        {"paragraphs": [{"words": [_word("ici")]}]},
                    ]
                }
            ],
            "text": "Le chat dort ici",
        }
    }

    tree = parse_annotation(data)

    assert [word.text for word in iter_words(tree)] == ["Le", "chat", "dort", "ici"]


def test_word_text_joins_symbols():
    tree = parse_annotation({"fullTextAnnotation": {"pages": [{"blocks": [{"paragraphs": [{"words": [_word("ﬁn")]}]}]}]}})

    [word] = list(iter_words(tree))
    assert word.text == "ﬁn"
    assert word.confidence == 0.9
    assert word.bounding_box[0] == Vertex(10, 20)
    assert word.bounding_box[2] == Vertex(60, 40)


def test_missing_coordinates_and_lists_default_to_zero_and_empty():
    vertices = [{}, {"x": 50}, {"x": 50, "y": 12}, {"y": 12}]
    data = {
        "fullTextAnnotation": {
            "pages": [
                {"blocks": [{"paragraphs": [{"words": [{"boundingBox": {"vertices": vertices}}]}]}]},
                {},
            ]
        }
    }

    tree = parse_annotation(data)

    [word] = list(iter_words(tree))
    assert word.bounding_box[0] == Vertex(0, 0)
    assert word.bounding_box[3] == Vertex(0, 12)
    assert word.confidence == 0.0
    assert word.text == ""
    assert tree.pages[1].blocks == ()


def test_missing_full_text_annotation_is_malformed():
    with pytest.raises(MalformedAnnotationError, match="fullTextAnnotation"):
        parse_annotation({"textAnnotations": []})


def test_error_response_is_malformed():
    with pytest.raises(MalformedAnnotationError, match="quota exceeded"):
        parse_annotation({"error": {"code": 8, "message": "quota exceeded"}})


def test_word_with_too_few_vertices_is_malformed():
    data = {
        "fullTextAnnotation": {
            "pages": [{"blocks": [{"paragraphs": [{"words": [_word("x", vertices=[{"x": 1, "y": 1}])]}]}]}]
        }
    }

    with pytest.raises(MalformedAnnotationError, match="4 vertices"):
        parse_annotation(data)


def test_non_object_nodes_are_malformed():
    with pytest.raises(MalformedAnnotationError):
        parse_annotation({"fullTextAnnotation": {"pages": ["oops"]}})
    with pytest.raises(MalformedAnnotationError):
        parse_annotation([])


def test_load_annotation_reads_json(tmp_path: Path):
    path = tmp_path / "Image (1).png.json"
    path.write_text(
        json.dumps({"fullTextAnnotation": {"pages": [{"blocks": [{"paragraphs": [{"words": [_word("ok")]}]}]}]}}),
        encoding="utf-8",
    )

    tree = load_annotation(path)

    assert [word.text for word in iter_words(tree)] == ["ok"]


def test_load_annotation_rejects_truncated_json(tmp_path: Path):
    path = tmp_path / "broken.png.json"
    path.write_text('{"fullTextAnnotation": {"pages": [', encoding="utf-8")

    with pytest.raises(MalformedAnnotationError, match="not valid JSON"):
        load_annotation(path)
