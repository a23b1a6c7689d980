class WebtoonError(Exception):
    """Base class for pipeline errors."""


class DecodeError(WebtoonError):
    """Image bytes are not a supported raster format or are truncated."""


class EmptyInputError(WebtoonError):
    """Stitching was asked to compose zero images."""


class GenerationError(WebtoonError):
    """The provider answered but returned no usable image."""


class TransportError(WebtoonError):
    """The provider call itself failed (network, auth, timeout)."""


class NotFoundError(WebtoonError, LookupError):
    """No panel with the requested identity."""


class BatchInProgressError(WebtoonError):
    """A generate-all run is already in flight."""
