from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from .config import load_config
from .errors import ProviderFailureError
from .inputs import natural_sort_key

logger = logging.getLogger(__name__)

_TSV_WORD_LEVEL = "5"


class VisionAnnotationProvider:
    """Google Cloud Vision ``DOCUMENT_TEXT_DETECTION`` in small batches.

    A batch either succeeds as a whole or raises ``ProviderFailureError``
    after ``max_retries`` attempts, so callers never see half a batch.
    """

    def __init__(
        self,
        language_hints: Sequence[str] = (),
        *,
        batch_size: int = 2,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: Any = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("--batch-size must be >= 1")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.language_hints = list(language_hints)
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = client

    def annotate(self, image_paths: Sequence[Path]) -> Iterator[tuple[Path, dict[str, Any]]]:
        from google.cloud import vision

        for start in range(0, len(image_paths), self.batch_size):
            chunk = list(image_paths[start : start + self.batch_size])
            requests = [self._build_request(vision, path) for path in chunk]
            logger.info("Sending batch of %d image(s) starting at %s", len(chunk), chunk[0].name)
            result = self._send(requests)

            if len(result.responses) != len(chunk):
                raise ProviderFailureError(
                    f"Expected {len(chunk)} responses, got {len(result.responses)}"
                )
            # check every response before yielding any so a batch is all-or-nothing
            payloads: list[dict[str, Any]] = []
            for path, response in zip(chunk, result.responses):
                if response.error.message:
                    raise ProviderFailureError(f"{path.name}: {response.error.message}")
                payloads.append(json.loads(vision.AnnotateImageResponse.to_json(response)))

            yield from zip(chunk, payloads)

    def _client_or_default(self) -> Any:
        if self._client is None:
            from google.cloud import vision

            self._client = vision.ImageAnnotatorClient()
        return self._client

    def _build_request(self, vision: Any, image_path: Path) -> Any:
        return vision.AnnotateImageRequest(
            image=vision.Image(content=Path(image_path).read_bytes()),
            features=[
                vision.Feature(
                    type_=vision.Feature.Type.DOCUMENT_TEXT_DETECTION,
                    model="builtin/latest",
                )
            ],
            image_context=vision.ImageContext(language_hints=self.language_hints),
        )

    def _send(self, requests: list[Any]) -> Any:
        from google.api_core import exceptions as api_exceptions

        client = self._client_or_default()
        attempt = 1
        while True:
            try:
                return client.batch_annotate_images(requests=requests)
            except api_exceptions.GoogleAPIError as exc:
                if attempt >= self.max_retries:
                    raise ProviderFailureError(
                        f"Vision request failed after {attempt} attempt(s): {exc}"
                    ) from exc
                delay = self.retry_delay * 2 ** (attempt - 1)
                logger.warning("Vision request failed (%s); retrying in %.1fs", exc, delay)
                time.sleep(delay)
                attempt += 1


class TesseractAnnotationProvider:
    """Local tesseract run, reshaped into the Vision response layout.

    TSV rows carry block/paragraph/word numbering, which maps onto the same
    tree. Boxes are axis-aligned and every character becomes one symbol.
    """

    def __init__(self, lang: str = "eng", *, psm: int = 3) -> None:
        self.lang = lang
        self.psm = psm

    def annotate(self, image_paths: Sequence[Path]) -> Iterator[tuple[Path, dict[str, Any]]]:
        if shutil.which("tesseract") is None:
            raise RuntimeError("Missing required executable in PATH: tesseract")

        for image_path in image_paths:
            try:
                proc = subprocess.run(
                    [
                        "tesseract",
                        str(image_path),
                        "stdout",
                        "-l",
                        self.lang,
                        "--psm",
                        str(self.psm),
                        "tsv",
                    ],
                    check=True,
                    capture_output=True,
                    text=True,
                )
            except subprocess.CalledProcessError as exc:
                raise ProviderFailureError(
                    f"tesseract failed on {Path(image_path).name} with exit code {exc.returncode}"
                ) from exc
            yield Path(image_path), tsv_to_annotation(proc.stdout)


def tsv_to_annotation(tsv: str) -> dict[str, Any]:
    pages: dict[str, dict[str, Any]] = {}
    blocks: dict[tuple[str, str], dict[str, Any]] = {}
    paragraphs: dict[tuple[str, str, str], dict[str, Any]] = {}

    lines = tsv.splitlines()
    for line in lines[1:]:
        parts = line.split("\t")
        if len(parts) < 12 or parts[0] != _TSV_WORD_LEVEL:
            continue

        text = parts[11].strip()
        if not text:
            continue

        try:
            conf = float(parts[10])
            left = int(parts[6])
            top = int(parts[7])
            width = int(parts[8])
            height = int(parts[9])
        except ValueError:
            continue
        if conf < 0:
            continue

        page_key = parts[1]
        block_key = (page_key, parts[2])
        paragraph_key = (page_key, parts[2], parts[3])

        if page_key not in pages:
            pages[page_key] = {"blocks": []}
        if block_key not in blocks:
            blocks[block_key] = {"paragraphs": []}
            pages[page_key]["blocks"].append(blocks[block_key])
        if paragraph_key not in paragraphs:
            paragraphs[paragraph_key] = {"words": []}
            blocks[block_key]["paragraphs"].append(paragraphs[paragraph_key])

        right = left + width
        bottom = top + height
        paragraphs[paragraph_key]["words"].append(
            {
                "confidence": conf / 100.0,
                "boundingBox": {
                    "vertices": [
                        {"x": left, "y": top},
                        {"x": right, "y": top},
                        {"x": right, "y": bottom},
                        {"x": left, "y": bottom},
                    ]
                },
                "symbols": [{"text": ch} for ch in text],
            }
        )

    return {"fullTextAnnotation": {"pages": list(pages.values())}}


def annotation_path_for(image_path: Path, annotation_dir: Path) -> Path:
    return Path(annotation_dir) / f"{Path(image_path).name}.json"


def pending_images(image_paths: Iterable[Path], annotation_dir: Path) -> list[Path]:
    """Images that have no annotation yet, in natural order."""
    pending = [
        Path(path)
        for path in image_paths
        if not annotation_path_for(path, annotation_dir).exists()
    ]
    pending.sort(key=lambda path: natural_sort_key(path.name))
    return pending


def write_annotation(annotation_path: Path, data: dict[str, Any]) -> None:
    """Persist ``data`` so the file is either complete or absent."""
    annotation_path = Path(annotation_path)
    annotation_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_raw = tempfile.mkstemp(
        prefix=f".{annotation_path.name}_", suffix=".tmp", dir=annotation_path.parent
    )
    tmp_path = Path(tmp_raw)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle)
        os.replace(tmp_path, annotation_path)
    finally:
        tmp_path.unlink(missing_ok=True)


def annotate_images(
    provider: Any,
    image_paths: Iterable[Path],
    annotation_dir: Path,
) -> list[Path]:
    pending = pending_images(image_paths, annotation_dir)
    written: list[Path] = []
    for image_path, response in provider.annotate(pending):
        annotation_path = annotation_path_for(image_path, annotation_dir)
        write_annotation(annotation_path, response)
        written.append(annotation_path)
    return written


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scan-overlay-annotate",
        description="Run OCR on scanned page images and store one annotation JSON per image.",
    )
    parser.add_argument("image_dir", type=Path, help="Directory with scanned page images")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Where to write <image>.json annotations (default: current directory)",
    )
    parser.add_argument(
        "--engine",
        choices=("vision", "tesseract"),
        default="vision",
        help="OCR provider (default: vision)",
    )
    parser.add_argument(
        "-l",
        "--lang",
        action="append",
        default=None,
        help="Language hint; repeat for several (Vision hint or tesseract language)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=2,
        help="Images per Vision request (default: 2)",
    )
    parser.add_argument(
        "--psm",
        type=int,
        choices=tuple(range(0, 14)),
        default=3,
        help="Tesseract page segmentation mode (default: 3)",
    )
    parser.add_argument(
        "--image-suffix",
        default=".png",
        help="Only annotate files with this suffix (default: .png)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON config file; its languageHints apply when no --lang is given",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def _build_provider(args: argparse.Namespace) -> Any:
    hints = list(args.lang or [])
    if not hints and args.config is not None:
        hints = list(load_config(args.config).language_hints)
    if args.engine == "tesseract":
        return TesseractAnnotationProvider("+".join(hints) or "eng", psm=args.psm)
    try:
        from google.cloud import vision  # noqa: F401
    except ImportError as exc:
        raise RuntimeError(
            "google-cloud-vision is not installed; install the 'vision' extra or use --engine tesseract"
        ) from exc
    return VisionAnnotationProvider(hints, batch_size=args.batch_size)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    output_dir: Path = args.output_dir or Path.cwd()
    try:
        if not args.image_dir.is_dir():
            raise FileNotFoundError(f"Image directory not found: {args.image_dir}")
        images = [
            path
            for path in args.image_dir.iterdir()
            if path.is_file() and path.name.endswith(args.image_suffix)
        ]
        pending = pending_images(images, output_dir)
        if not pending:
            print("Nothing to do: every image already has an annotation.")
            return 0
        provider = _build_provider(args)
        written = annotate_images(provider, pending, output_dir)
    except (FileNotFoundError, RuntimeError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    print(f"Done: {len(written)} annotation(s) written to {output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
