"""Error types shared by the pipeline stages."""


class PipelineError(Exception):
    """Base class for every error raised by gallerybuild."""


class ConfigError(PipelineError):
    """Missing or invalid required input. Raised before anything is mutated."""


class SourceReadError(PipelineError):
    """A source image could not be opened or decoded."""

    def __init__(self, path, reason):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class TranscodeError(PipelineError):
    """A single width/format encode failed."""

    def __init__(self, path, reason):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class DeletionError(PipelineError):
    """A prune candidate could not be removed."""

    def __init__(self, path, reason):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
