from __future__ import annotations


class ExtractionError(Exception):
    pass


class EngineError(ExtractionError):
    """The OCR engine could not produce text for an image."""


class EmptyInput(ExtractionError):
    """Recognised text is too short to be worth extracting from."""


class BackendError(ExtractionError):
    """The generative-text backend failed or returned an unusable envelope."""


class BackendTimeout(BackendError):
    pass
