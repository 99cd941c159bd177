"""Error taxonomy shared by the ingestion pipeline and the model lifecycle."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    UNSUPPORTED_TYPE = "unsupported_type"
    READ_ERROR = "read_error"
    DECODE_ERROR = "decode_error"
    MODEL_LOAD_ERROR = "model_load_error"
    MODEL_NOT_READY = "model_not_ready"
    INFERENCE_ERROR = "inference_error"


class LabelScopeError(Exception):
    """Base class for every recoverable error surfaced to the user.

    Subclasses pin ``kind`` and a default user-facing message. A more specific
    message can be passed to the constructor; it is kept in ``detail`` for logs
    while ``message`` stays the user-facing text.
    """

    kind: ErrorKind
    message: str

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(detail or self.message)


class UnsupportedTypeError(LabelScopeError):
    kind = ErrorKind.UNSUPPORTED_TYPE
    message = "Please upload an image file (JPG, PNG)."


class ReadError(LabelScopeError):
    kind = ErrorKind.READ_ERROR
    message = "Error reading file. Please try again."


class DecodeError(LabelScopeError):
    kind = ErrorKind.DECODE_ERROR
    message = "Error loading image. Please try another file."


class ModelLoadError(LabelScopeError):
    kind = ErrorKind.MODEL_LOAD_ERROR
    message = "Unable to load the classification model. Check access to the model hub and retry."


class ModelNotReadyError(LabelScopeError):
    kind = ErrorKind.MODEL_NOT_READY
    message = "Model not loaded yet. Please try again in a moment."


class InferenceError(LabelScopeError):
    kind = ErrorKind.INFERENCE_ERROR
    message = "Error analyzing image. Please try again."
