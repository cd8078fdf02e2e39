from __future__ import annotations

import argparse
import importlib.util
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from .compositor import PAGE_SIZES, Placed, compose_pages
from .config import OverlayConfig, load_config
from .document import write_document
from .inputs import discover_pages, select_pages


@dataclass(frozen=True)
class OverlayResult:
    output_pdf: Path
    pages: int
    words_placed: int
    words_total: int


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scan-overlay-pdf",
        description=(
            "Assemble scanned page images into a PDF with an invisible OCR text layer "
            "registered to the words on each scan (works with Ctrl+F in PDF readers)."
        ),
    )
    parser.add_argument("image_dir", type=Path, help="Directory with scanned page images")
    parser.add_argument("output_pdf", type=Path, help="Output searchable PDF path")
    parser.add_argument(
        "--annotations",
        type=Path,
        default=None,
        help="Directory with <image>.json OCR annotations (default: IMAGE_DIR)",
    )
    parser.add_argument(
        "--image-suffix",
        default=".png",
        help="Suffix of the images the annotations were made from (default: .png)",
    )
    parser.add_argument(
        "--background-suffix",
        default=None,
        help="Place <name><suffix> as page background instead, e.g. .jpg for smaller output",
    )
    parser.add_argument(
        "--page-size",
        choices=tuple(sorted(PAGE_SIZES)),
        type=str.upper,
        default=None,
        help="Output page size (default: A4)",
    )
    parser.add_argument(
        "--confidence",
        type=float,
        default=None,
        help="Minimum word confidence to place text (default: 0.6)",
    )
    parser.add_argument("--first", type=int, default=None, help="First page to include (1-based)")
    parser.add_argument("--last", type=int, default=None, help="Last page to include (1-based)")
    parser.add_argument(
        "--jobs",
        type=int,
        default=None,
        help="Number of parallel page workers (default: 1)",
    )
    parser.add_argument(
        "--skip-bad-pages",
        action="store_true",
        help="Leave out pages with malformed annotations or unreadable images instead of failing",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def _ensure_runtime_dependencies() -> None:
    missing = [
        package
        for module, package in (("pikepdf", "pikepdf"), ("PIL", "Pillow"), ("fitz", "PyMuPDF"))
        if importlib.util.find_spec(module) is None
    ]
    if missing:
        joined = ", ".join(missing)
        raise RuntimeError(f"Missing required python packages: {joined}.")


def _resolve_config(args: argparse.Namespace) -> OverlayConfig:
    config = load_config(args.config) if args.config is not None else OverlayConfig()
    return config.with_overrides(
        confidence_threshold=args.confidence,
        page_geometry=args.page_size,
        workers=args.jobs,
    )


def run_overlay(
    image_dir: Path,
    output_pdf: Path,
    *,
    config: OverlayConfig | None = None,
    annotation_dir: Path | None = None,
    image_suffix: str = ".png",
    background_suffix: str | None = None,
    first: int | None = None,
    last: int | None = None,
    skip_failed: bool = False,
) -> OverlayResult:
    config = config or OverlayConfig()
    pages = discover_pages(
        image_dir,
        annotation_dir,
        image_suffix=image_suffix,
        background_suffix=background_suffix,
    )
    pages = select_pages(pages, first, last)
    if not pages:
        raise FileNotFoundError(f"No annotated pages found in {annotation_dir or image_dir}")

    plans = compose_pages(
        pages,
        config.page_geometry,
        confidence_threshold=config.confidence_threshold,
        workers=config.workers,
        skip_failed=skip_failed,
    )
    if not plans:
        raise ValueError("No page could be composed")

    page_count = write_document(plans, output_pdf)
    return OverlayResult(
        output_pdf=output_pdf,
        pages=page_count,
        words_placed=sum(plan.count(Placed) for plan in plans),
        words_total=sum(len(plan.outcomes) for plan in plans),
    )


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        _ensure_runtime_dependencies()
        config = _resolve_config(args)
        result = run_overlay(
            args.image_dir,
            args.output_pdf,
            config=config,
            annotation_dir=args.annotations,
            image_suffix=args.image_suffix,
            background_suffix=args.background_suffix,
            first=args.first,
            last=args.last,
            skip_failed=args.skip_bad_pages,
        )
    except (FileNotFoundError, RuntimeError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    print(
        f"Done: searchable PDF written to {result.output_pdf} "
        f"({result.pages} page(s), {result.words_placed}/{result.words_total} words placed)"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
