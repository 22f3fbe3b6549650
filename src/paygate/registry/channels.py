"""Maps canonical channels to each provider's own channel vocabulary."""

import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)


class _Omit:
    """Marker telling the caller to leave the channel field out of the payload."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "OMIT"

    def __bool__(self) -> bool:
        return False


OMIT = _Omit()

ChannelResult = Union[List[str], _Omit]
ChannelFunction = Callable[[List[str]], ChannelResult]


def table_mapper(
    table: Mapping[str, str],
    valid: Optional[Iterable[str]] = None,
    unknown: Callable[[str], str] = lambda token: token,
) -> ChannelFunction:
    """
    Build a mapping function from a canonical->provider table. Tokens missing
    from the table go through ``unknown``; when ``valid`` is given, anything
    outside it is dropped.
    """
    allowed = set(valid) if valid is not None else None

    def mapper(channels: List[str]) -> ChannelResult:
        mapped: List[str] = []
        for channel in channels:
            token = table.get(channel)
            if token is None:
                token = unknown(channel)
            if allowed is not None and token not in allowed:
                logger.debug(f"Dropping unsupported channel '{channel}'")
                continue
            if token not in mapped:
                mapped.append(token)
        return mapped

    return mapper


def omit_channels(channels: List[str]) -> ChannelResult:
    return OMIT


BUILTIN_CHANNEL_MAPPERS: Dict[str, ChannelFunction] = {
    "paystack": table_mapper({
        "card": "card",
        "bank_transfer": "bank_transfer",
        "ussd": "ussd",
        "mobile_money": "mobile_money",
        "qr_code": "qr",
    }),
    "flutterwave": table_mapper(
        {
            "card": "card",
            "bank_transfer": "banktransfer",
            "ussd": "ussd",
            "mobile_money": "mobilemoneyghana",
            "qr_code": "nqr",
        },
        valid=(
            "card", "banktransfer", "ussd", "account", "mobilemoneyghana",
            "mobilemoneyfranco", "mobilemoneyuganda", "mobilemoneyrwanda",
            "mobilemoneyzambia", "mpesa", "nqr", "barter", "credit",
        ),
    ),
    "monnify": table_mapper(
        {
            "card": "CARD",
            "bank_transfer": "ACCOUNT_TRANSFER",
            "ussd": "USSD",
            "mobile_money": "PHONE_NUMBER",
        },
        valid=("CARD", "ACCOUNT_TRANSFER", "USSD", "PHONE_NUMBER"),
        unknown=str.upper,
    ),
    "mollie": table_mapper(
        {
            "card": "creditcard",
            "bank_transfer": "banktransfer",
            "mobile_money": "paypal",
        },
        valid=(
            "creditcard", "banktransfer", "ideal", "bancontact", "sofort", "eps",
            "giropay", "kbc", "belfius", "przelewy24", "paypal", "applepay", "directdebit",
        ),
        unknown=str.lower,
    ),
    "nowpayments": omit_channels,
    "stripe": table_mapper(
        {"card": "card", "bank_transfer": "us_bank_account"},
        valid=(
            "card", "us_bank_account", "sepa_debit", "ideal", "bancontact",
            "giropay", "sofort", "eps", "p24", "alipay", "wechat_pay",
        ),
    ),
    "square": table_mapper(
        {"card": "CARD", "bank_transfer": "BANK_ACCOUNT", "qr_code": "CASH_APP"},
        valid=("CARD", "BANK_ACCOUNT", "CASH_APP", "WALLET", "AFTERPAY", "OTHER"),
        unknown=str.upper,
    ),
    "paypal": omit_channels,
}


class ChannelMapper:
    """Registry of per-provider channel mapping functions."""

    def __init__(self, mappers: Optional[Mapping[str, ChannelFunction]] = None):
        self._mappers: Dict[str, ChannelFunction] = dict(
            BUILTIN_CHANNEL_MAPPERS if mappers is None else mappers
        )

    def register(self, provider: str, mapper: ChannelFunction) -> None:
        self._mappers[provider.lower()] = mapper

    def supports(self, provider: str) -> bool:
        return provider.lower() in self._mappers

    def map_channels(self, channels: Optional[Iterable[str]], provider: str) -> ChannelResult:
        """
        Translate canonical channels for ``provider``. Returns ``OMIT`` when there
        is nothing to send or the provider does not filter by channel.
        """
        if not channels:
            return OMIT
        canonical = [str(channel).strip().lower() for channel in channels if str(channel).strip()]
        if not canonical:
            return OMIT
        mapper = self._mappers.get(provider.lower())
        if mapper is None:
            return list(dict.fromkeys(canonical))
        return mapper(canonical)
