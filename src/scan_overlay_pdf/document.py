from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import IO, Any, Iterable

from .compositor import Font, PageGeometry, PagePlan, TextPlacement
from .fonts import HELVETICA

_GRAY_MODES = ("1", "L", "LA", "I", "I;16", "F")


class DocumentBuilder:
    """Accumulates composed pages into a single PDF.

    Each page gets the scan as a full-bleed image followed by one invisible
    (``3 Tr``) text run per placement. Page space has its origin at the top
    left; the conversion to PDF's bottom-left origin happens here.
    """

    def __init__(self, font: Font = HELVETICA) -> None:
        import pikepdf

        self._pdf = pikepdf.Pdf.new()
        self._font = font
        self._font_object: Any = None

    def __enter__(self) -> DocumentBuilder:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._pdf.close()

    @property
    def page_count(self) -> int:
        return len(self._pdf.pages)

    def add_page(self, plan: PagePlan) -> DocumentBuilder:
        import pikepdf

        geometry = plan.geometry
        page = self._pdf.add_blank_page(page_size=(geometry.width, geometry.height))

        resources = page.obj.get("/Resources", pikepdf.Dictionary())
        resources.XObject = pikepdf.Dictionary(Im0=_make_image(self._pdf, plan.raster.background_path))
        resources.Font = pikepdf.Dictionary(F1=self._font_resource())
        page.obj.Resources = resources

        stream_lines = [
            f"q {_num(geometry.width)} 0 0 {_num(geometry.height)} 0 0 cm /Im0 Do Q".encode("ascii")
        ]
        for placement in plan.placements:
            line = self._text_run(placement, geometry)
            if line:
                stream_lines.append(line)

        page.contents_add(self._pdf.make_stream(b"\n".join(stream_lines) + b"\n"))
        return self

    def save(self, target: Path | str | IO[bytes]) -> None:
        self._pdf.save(target)

    def _font_resource(self) -> Any:
        import pikepdf

        if self._font_object is None:
            self._font_object = self._pdf.make_indirect(
                pikepdf.Dictionary(
                    Type=pikepdf.Name("/Font"),
                    Subtype=pikepdf.Name("/Type1"),
                    BaseFont=pikepdf.Name(f"/{self._font.name}"),
                    Encoding=pikepdf.Name("/WinAnsiEncoding"),
                )
            )
        return self._font_object

    def _text_run(self, placement: TextPlacement, geometry: PageGeometry) -> bytes:
        encoded = self._font.encode(placement.text)
        if not encoded:
            return b""
        baseline = geometry.height - (placement.y + self._font.ascent * placement.font_size)
        render_mode = b"3 Tr " if placement.invisible else b""
        return (
            b"BT "
            + render_mode
            + f"/F1 {_num(placement.font_size)} Tf ".encode("ascii")
            + f"{_num(placement.horizontal_scale)} 0 0 1 {_num(placement.x)} {_num(baseline)} Tm ".encode("ascii")
            + b"("
            + _escape_pdf_bytes(encoded)
            + b") Tj ET"
        )


def write_document(
    plans: Iterable[PagePlan],
    output_pdf: Path,
    *,
    font: Font = HELVETICA,
) -> int:
    """Write ``plans`` as one PDF at ``output_pdf`` and return the page count.

    The PDF is saved next to the destination and moved into place only once
    complete, so a failed run never leaves a truncated file behind.
    """
    output_pdf = Path(output_pdf)
    output_pdf.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_raw = tempfile.mkstemp(
        prefix=f".{output_pdf.stem}_", suffix=".pdf.tmp", dir=output_pdf.parent
    )
    os.close(fd)
    tmp_pdf = Path(tmp_raw)

    try:
        with DocumentBuilder(font=font) as builder:
            for plan in plans:
                builder.add_page(plan)
            page_count = builder.page_count
            builder.save(tmp_pdf)
        os.replace(tmp_pdf, output_pdf)
    finally:
        tmp_pdf.unlink(missing_ok=True)

    return page_count


def _make_image(pdf: Any, image_path: Path) -> Any:
    import pikepdf
    from PIL import Image

    with Image.open(image_path) as image:
        width, height = image.size
        if image.format == "JPEG" and image.mode in ("L", "RGB"):
            color_space = "/DeviceGray" if image.mode == "L" else "/DeviceRGB"
            return pdf.make_stream(
                Path(image_path).read_bytes(),
                Type=pikepdf.Name("/XObject"),
                Subtype=pikepdf.Name("/Image"),
                Width=width,
                Height=height,
                ColorSpace=pikepdf.Name(color_space),
                BitsPerComponent=8,
                Filter=pikepdf.Name("/DCTDecode"),
            )

        gray = image.mode in _GRAY_MODES
        converted = image.convert("L" if gray else "RGB")
        # left uncompressed here; qpdf flate-compresses streams on save
        return pdf.make_stream(
            converted.tobytes(),
            Type=pikepdf.Name("/XObject"),
            Subtype=pikepdf.Name("/Image"),
            Width=width,
            Height=height,
            ColorSpace=pikepdf.Name("/DeviceGray" if gray else "/DeviceRGB"),
            BitsPerComponent=8,
        )


def _escape_pdf_bytes(data: bytes) -> bytes:
    return data.replace(b"\\", b"\\\\").replace(b"(", b"\\(").replace(b")", b"\\)")


def _num(value: float) -> str:
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text
