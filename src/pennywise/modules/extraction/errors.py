from __future__ import annotations


class ExtractionError(RuntimeError):
    pass


class UnsupportedInputError(ExtractionError):
    """Input the pipeline refuses to process (mime type, size, missing or empty file)."""


class NormalizationError(ExtractionError):
    pass


class VisionExtractionError(ExtractionError):
    """The vision tier could not produce a response (transport, quota, refusal)."""


class OcrError(ExtractionError):
    pass
