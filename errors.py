"""Exceptions raised along the mockup pipeline.

Everything below ``ValidationError`` is reported to the caller as a 500 with
the message verbatim; ``ValidationError`` is the only 400.
"""


class MockupError(Exception):
    """Base class for pipeline failures."""


class ConfigError(MockupError):
    pass


class ValidationError(MockupError):
    pass


class FetchError(MockupError):
    pass


class ConversionError(MockupError):
    pass


class NoCandidateError(MockupError):
    pass


class NoImagePartError(MockupError):
    pass


class GenerationTimeoutError(MockupError, TimeoutError):
    pass


class FileSystemError(MockupError):
    pass
