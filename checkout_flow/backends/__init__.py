"""
Concrete backends for the checkout coordinators.

- "sql": SqlAccountDirectory + SandboxPaymentGateway + LocalOtpProvider on
  the local database (development, tests)
- "http": HttpAccountDirectory + HttpPaymentGateway on the hosted commerce
  endpoints, with LocalOtpProvider for codes
"""

from dataclasses import dataclass
from typing import Optional

from ..config import CHECKOUT_API_BASE_URL, CHECKOUT_BACKEND
from ..flow.backends import AccountDirectory, OtpProvider, PaymentGateway
from .http_api import HttpAccountDirectory, HttpPaymentGateway
from .otp import LocalOtpProvider
from .sql import SandboxPaymentGateway, SessionFactory, SqlAccountDirectory


@dataclass
class Backends:
    directory: AccountDirectory
    otp: OtpProvider
    gateway: PaymentGateway


def build_backends(
    session_factory: SessionFactory,
    kind: str = CHECKOUT_BACKEND,
    base_url: Optional[str] = CHECKOUT_API_BASE_URL,
) -> Backends:
    """
    Wire the backends selected by CHECKOUT_BACKEND.

    Raises:
        ValueError: Unknown backend kind, or "http" without a base URL.
    """
    otp = LocalOtpProvider(session_factory)
    if kind == "sql":
        return Backends(
            directory=SqlAccountDirectory(session_factory),
            otp=otp,
            gateway=SandboxPaymentGateway(session_factory),
        )
    if kind == "http":
        return Backends(
            directory=HttpAccountDirectory(base_url),
            otp=otp,
            gateway=HttpPaymentGateway(base_url),
        )
    raise ValueError(f"Unknown CHECKOUT_BACKEND {kind!r}")


__all__ = [
    "Backends",
    "HttpAccountDirectory",
    "HttpPaymentGateway",
    "LocalOtpProvider",
    "SandboxPaymentGateway",
    "SqlAccountDirectory",
    "build_backends",
]
