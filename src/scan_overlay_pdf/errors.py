from __future__ import annotations


class MalformedAnnotationError(ValueError):
    """The annotation tree is missing a field the compositor needs."""


class DimensionMismatchError(ValueError):
    """Raster pixel dimensions are unavailable or not positive."""


class ProviderFailureError(RuntimeError):
    """The annotation provider did not deliver a usable response."""
