"""Error taxonomy shared by the pipeline stages and stores."""


class CtxdError(Exception):
    """Base class for ctxd errors."""


class CaptureError(CtxdError):
    """A raw event or log line could not be parsed. Skip it and continue."""


class InferenceFailure(CtxdError):
    """The inference backend timed out, raised, or returned unusable output."""


class WriteConflict(CtxdError):
    """An exclusive write could not be completed within the retry budget."""

    def __init__(self, path, attempts: int):
        super().__init__(f"Could not acquire write lock for {path} after {attempts} attempts")
        self.path = path
        self.attempts = attempts


class ChecksumMismatch(CtxdError):
    """A persisted snapshot failed verification."""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Snapshot checksum mismatch: stored {expected!r}, computed {actual!r}")
        self.expected = expected
        self.actual = actual
