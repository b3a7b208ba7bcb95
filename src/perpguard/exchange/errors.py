"""Error taxonomy for the exchange boundary.

Every failure that crosses the Binance boundary is mapped into one of the
classes below. The ``retryable`` flag tells call-site retry loops whether a
new attempt makes sense: authentication and validation failures are never
retried, connectivity and exchange business errors may be.
"""

from typing import Optional

import requests
from binance.exceptions import BinanceAPIException, BinanceRequestException

# -1022 invalid signature, -2014/-2015 api-key format / permissions
AUTH_ERROR_CODES = {-1022, -2014, -2015}

# rejections that describe an intrinsically invalid order
VALIDATION_ERROR_CODES = {
    -1013,  # filter failure
    -1100,  # illegal characters in parameter
    -1101,  # too many / duplicated parameters
    -1102,  # mandatory parameter missing
    -1106,  # parameter sent when not required
    -1111,  # precision over the maximum
    -1116,  # invalid order type
    -1117,  # invalid side
    -1121,  # invalid symbol
    -2021,  # order would immediately trigger
    -4003,  # quantity less than zero
    -4005,  # quantity greater than max
    -4014,  # price not increased by tick size
    -4164,  # notional below minimum
}

# timestamp outside recvWindow (clock skew)
TIMESTAMP_ERROR_CODES = {-1021}

RATE_LIMIT_CODES = {-1003, -1015}

# raised by python-binance / requests at the exchange boundary
EXCHANGE_EXCEPTIONS = (
    BinanceAPIException,
    BinanceRequestException,
    requests.exceptions.RequestException,
)


class PerpGuardError(Exception):
    """Base class for every error raised by the engine."""

    retryable = False

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(PerpGuardError):
    """Missing or inconsistent configuration (fatal)."""


class ConnectivityError(PerpGuardError):
    """Timeouts, DNS/proxy failures, 5xx answers."""

    retryable = True


class SessionInitError(ConnectivityError):
    """Session handshake exhausted its attempts. No degraded mode exists."""

    retryable = False


class AuthenticationError(PerpGuardError):
    """Bad signature or API key. Retrying only burns rate-limit budget."""


class ValidationError(PerpGuardError):
    """Order or parameter rejected as intrinsically invalid."""


class ExchangeBusinessError(PerpGuardError):
    """Insufficient margin, rate limit and other exchange-side rejections."""

    retryable = True


class MalformedResponseError(PerpGuardError):
    """Empty or unparseable response body."""

    retryable = True


class PositionFetchError(PerpGuardError):
    """Positions could not be read. Never to be confused with "no positions"."""


def classify_exception(exc: Exception) -> PerpGuardError:
    """Maps python-binance / requests exceptions into the engine taxonomy."""
    if isinstance(exc, PerpGuardError):
        return exc

    if isinstance(exc, BinanceAPIException):
        code = exc.code
        status = getattr(exc, "status_code", None)
        message = exc.message or str(exc)
        if code in AUTH_ERROR_CODES or status == 401:
            return AuthenticationError(message, code)
        if code in VALIDATION_ERROR_CODES:
            return ValidationError(message, code)
        if code in TIMESTAMP_ERROR_CODES:
            return ConnectivityError(message, code)
        if status is not None and status >= 500:
            return ConnectivityError(message, code)
        if code in RATE_LIMIT_CODES or status in (418, 429):
            return ExchangeBusinessError(f"Rate limited: {message}", code)
        return ExchangeBusinessError(message, code)

    if isinstance(exc, BinanceRequestException):
        return MalformedResponseError(getattr(exc, "message", str(exc)))

    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return ConnectivityError(f"{type(exc).__name__}: {exc}")

    if isinstance(exc, requests.exceptions.RequestException):
        return ConnectivityError(str(exc))

    if isinstance(exc, ValueError):
        return MalformedResponseError(f"Invalid response: {exc}")

    return ExchangeBusinessError(str(exc))
