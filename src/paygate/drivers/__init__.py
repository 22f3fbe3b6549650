from .base import Driver
from .support import DriverSupport
from .security import ReplayGuard
from .paystack import PaystackDriver
from .flutterwave import FlutterwaveDriver
from .monnify import MonnifyDriver
from .mollie import MollieDriver
from .nowpayments import NowPaymentsDriver
from .square import SquareDriver
from .paypal import PayPalDriver
from .stripe_driver import StripeDriver

# Explicit name -> constructor map registered with the DriverFactory at startup.
BUILTIN_DRIVERS = {
    "paystack": PaystackDriver,
    "flutterwave": FlutterwaveDriver,
    "monnify": MonnifyDriver,
    "mollie": MollieDriver,
    "nowpayments": NowPaymentsDriver,
    "square": SquareDriver,
    "paypal": PayPalDriver,
    "stripe": StripeDriver,
}

__all__ = [
    "Driver",
    "DriverSupport",
    "ReplayGuard",
    "PaystackDriver",
    "FlutterwaveDriver",
    "MonnifyDriver",
    "MollieDriver",
    "NowPaymentsDriver",
    "SquareDriver",
    "PayPalDriver",
    "StripeDriver",
    "BUILTIN_DRIVERS",
]
