from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping

from .errors import MalformedAnnotationError


@dataclass(frozen=True)
class Vertex:
    x: float
    y: float


@dataclass(frozen=True)
class Symbol:
    text: str


@dataclass(frozen=True)
class Word:
    # top-left, top-right, bottom-right, bottom-left as delivered by the provider
    bounding_box: tuple[Vertex, Vertex, Vertex, Vertex]
    confidence: float
    symbols: tuple[Symbol, ...]

    @property
    def text(self) -> str:
        return "".join(symbol.text for symbol in self.symbols)


@dataclass(frozen=True)
class Paragraph:
    words: tuple[Word, ...]


@dataclass(frozen=True)
class Block:
    paragraphs: tuple[Paragraph, ...]


@dataclass(frozen=True)
class AnnotationPage:
    blocks: tuple[Block, ...]


@dataclass(frozen=True)
class AnnotationTree:
    pages: tuple[AnnotationPage, ...]


def iter_words(tree: AnnotationTree) -> Iterator[Word]:
    """Yield every word in reading order: page, block, paragraph, word."""
    for page in tree.pages:
        for block in page.blocks:
            for paragraph in block.paragraphs:
                yield from paragraph.words


def parse_annotation(data: Any) -> AnnotationTree:
    """Build an AnnotationTree from a Vision-style response mapping.

    Protobuf JSON drops zero scalars and empty lists, so absent coordinates
    read as 0 and absent child lists read as empty. A missing
    ``fullTextAnnotation`` is not recoverable.
    """
    _require_mapping(data, "response")
    error = data.get("error")
    if isinstance(error, Mapping) and (error.get("message") or error.get("code")):
        raise MalformedAnnotationError(
            f"Annotation response carries an error: {error.get('message', '')}"
        )

    full_text = data.get("fullTextAnnotation")
    if full_text is None:
        raise MalformedAnnotationError("Annotation has no fullTextAnnotation")
    _require_mapping(full_text, "fullTextAnnotation")

    pages = tuple(
        AnnotationPage(blocks=tuple(_parse_block(block) for block in _children(page, "blocks")))
        for page in _children(full_text, "pages")
    )
    return AnnotationTree(pages=pages)


def load_annotation(path: Path) -> AnnotationTree:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MalformedAnnotationError(f"Annotation is not valid JSON: {path}: {exc}") from exc
    return parse_annotation(data)


def _parse_block(block: Any) -> Block:
    return Block(
        paragraphs=tuple(
            Paragraph(words=tuple(_parse_word(word) for word in _children(paragraph, "words")))
            for paragraph in _children(block, "paragraphs")
        )
    )


def _parse_word(word: Any) -> Word:
    _require_mapping(word, "word")
    bounding_box = word.get("boundingBox")
    if not isinstance(bounding_box, Mapping):
        raise MalformedAnnotationError("Word has no boundingBox")

    vertices = [_parse_vertex(vertex) for vertex in bounding_box.get("vertices", [])]
    if len(vertices) < 4:
        raise MalformedAnnotationError(
            f"Word bounding box needs 4 vertices, got {len(vertices)}"
        )

    symbols = []
    for symbol in _children(word, "symbols"):
        symbols.append(Symbol(text=str(symbol.get("text", ""))))

    try:
        confidence = float(word.get("confidence", 0.0))
    except (TypeError, ValueError) as exc:
        raise MalformedAnnotationError(f"Word confidence is not a number: {exc}") from exc

    return Word(
        bounding_box=(vertices[0], vertices[1], vertices[2], vertices[3]),
        confidence=confidence,
        symbols=tuple(symbols),
    )


def _parse_vertex(vertex: Any) -> Vertex:
    _require_mapping(vertex, "vertex")
    try:
        return Vertex(x=float(vertex.get("x", 0)), y=float(vertex.get("y", 0)))
    except (TypeError, ValueError) as exc:
        raise MalformedAnnotationError(f"Vertex coordinate is not a number: {exc}") from exc


def _children(node: Any, key: str) -> list[Mapping[str, Any]]:
    _require_mapping(node, key)
    children = node.get(key, [])
    if not isinstance(children, list):
        raise MalformedAnnotationError(f"Expected a list under {key!r}")
    for child in children:
        _require_mapping(child, key)
    return children


def _require_mapping(node: Any, what: str) -> None:
    if not isinstance(node, Mapping):
        raise MalformedAnnotationError(f"Expected an object for {what}, got {type(node).__name__}")
