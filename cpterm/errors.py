"""Exceptions raised across the relay, the native host link and the scrapers."""


class CPTermError(Exception):
    """Base error for everything raised by this package."""


class ObservationTimeout(CPTermError, TimeoutError):
    """An awaited page condition never became true."""


class StructuralAssumptionError(CPTermError):
    """An element the scraper relies on is missing from the page."""


class VersionMismatchError(CPTermError):
    """The native host announced a version other than the expected one."""


class HostConnectionError(CPTermError, ConnectionError):
    """The native host could not be started, or its pipe broke."""


class MessageFormatError(CPTermError, ValueError):
    """A payload did not match any known message shape."""


__all__ = [
    "CPTermError",
    "ObservationTimeout",
    "StructuralAssumptionError",
    "VersionMismatchError",
    "HostConnectionError",
    "MessageFormatError",
]
