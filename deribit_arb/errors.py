from __future__ import annotations


class DeribitArbError(Exception):
    """Base class for scanner errors."""


class InvalidInputError(DeribitArbError, ValueError):
    """Malformed data handed to the engine (bad names, empty legs, zero size)."""


class TransientError(DeribitArbError, RuntimeError):
    """Venue or network failure surfaced by the client layer."""


class ConfigError(DeribitArbError, RuntimeError):
    """Configuration problem that prevents startup."""


class InstrumentNameError(InvalidInputError):
    pass


class InvalidFormatError(InstrumentNameError):
    def __init__(self, value: str) -> None:
        super().__init__(f"invalid instrument format: {value}")
        self.value = value


class UnknownCurrencyError(InstrumentNameError):
    def __init__(self, value: str) -> None:
        super().__init__(f"unknown currency: {value}")
        self.value = value


class UnknownOptionKindError(InstrumentNameError):
    def __init__(self, value: str) -> None:
        super().__init__(f"unknown option kind: {value}")
        self.value = value


class InvalidExpiryError(InstrumentNameError):
    def __init__(self, value: str) -> None:
        super().__init__(f"invalid expiry: {value}")
        self.value = value


class InvalidStrikeError(InstrumentNameError):
    def __init__(self, value: str) -> None:
        super().__init__(f"invalid strike: {value}")
        self.value = value
