from __future__ import annotations


class HelveticaFont:
    """Base-14 Helvetica with WinAnsi encoding.

    Nothing is embedded in the output, so only characters representable in
    WinAnsi (cp1252) can be drawn. Widths come from PyMuPDF's built-in
    Helvetica metrics.
    """

    name = "Helvetica"
    encoding = "cp1252"
    # AFM ascender, in em
    ascent = 0.718

    def renderable(self, text: str) -> str:
        return "".join(ch for ch in text if _encodable(ch, self.encoding))

    def encode(self, text: str) -> bytes:
        return self.renderable(text).encode(self.encoding)

    def text_width(self, text: str, font_size: float) -> float:
        import fitz

        if not text:
            return 0.0
        return float(fitz.get_text_length(text, fontname="helv", fontsize=font_size))


def _encodable(ch: str, encoding: str) -> bool:
    if not ch.isprintable():
        return False
    try:
        ch.encode(encoding)
    except UnicodeEncodeError:
        return False
    return True


HELVETICA = HelveticaFont()
