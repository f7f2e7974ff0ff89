"""Exceptions crossing module boundaries inside the ask pipeline."""


class StoreUnavailableError(Exception):
    """The analytical store could not be reached or queried."""


class GeneratorTimeoutError(Exception):
    """The external generator did not answer before the deadline."""


class GeneratorCancelledError(Exception):
    """The generator call was cancelled because the client went away."""


class GeneratorFormatError(Exception):
    """The generator returned text that is not the expected JSON shape."""


class GeneratorUnavailableError(Exception):
    """The generator is not configured (e.g. missing API key)."""
