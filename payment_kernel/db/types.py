"""
Module: payment_kernel.db.types
Responsibility: Money helpers every model and service shares: precision,
    rounding, coercion and ISO 4217 currency validation.
Architecture position: Kernel > DB.  Imported by models/, domain/, services/
    and modules.  Imports nothing above the exceptions module.

Invariants enforced:
    - No floats.  ``to_money`` refuses them; amounts are Decimal end to end.
    - ``round_money`` (ROUND_HALF_UP) is the single rounding function.
    - Currency codes are 3-letter ISO 4217 codes.
    - Amounts never carry more decimals than their currency's minor unit.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from payment_kernel.exceptions import InvalidAmountError, InvalidCurrencyError

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a monetary value; the only sanctioned rounding function."""
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def to_money(value) -> Decimal:
    """
    Coerce ``value`` (Decimal, int or numeric string) to a Decimal.

    Raises:
        InvalidAmountError: for floats, booleans, or unparseable input.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(value, "monetary amounts must not be floats or booleans")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise InvalidAmountError(value, "not a number") from exc
    else:
        raise InvalidAmountError(value, f"unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise InvalidAmountError(value, "amount must be finite")
    return result


def within_tolerance(a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
    """True when ``|a - b| < tolerance``."""
    return abs(a - b) < tolerance


ISO_4217_CURRENCIES: frozenset[str] = frozenset(
    """
    AED AFN ALL AMD ANG AOA ARS AUD AWG AZN BAM BBD BDT BGN BHD BIF BMD BND
    BOB BRL BSD BTN BWP BYN BZD CAD CDF CHF CLP CNY COP CRC CUP CVE CZK DJF
    DKK DOP DZD EGP ERN ETB EUR FJD FKP GBP GEL GHS GIP GMD GNF GTQ GYD HKD
    HNL HTG HUF IDR ILS INR IQD IRR ISK JMD JOD JPY KES KGS KHR KMF KPW KRW
    KWD KYD KZT LAK LBP LKR LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR
    MVR MWK MXN MYR MZN NAD NGN NIO NOK NPR NZD OMR PAB PEN PGK PHP PKR PLN
    PYG QAR RON RSD RUB RWF SAR SBD SCR SDG SEK SGD SHP SLE SOS SRD SSP STN
    SVC SYP SZL THB TJS TMT TND TOP TRY TTD TWD TZS UAH UGX USD UYU UZS VES
    VND VUV WST XAF XCD XOF XPF YER ZAR ZMW ZWL
    """.split()
)


# ISO 4217 minor units where they differ from two.
CURRENCY_DECIMAL_PLACES: dict[str, int] = {
    **dict.fromkeys(
        "BIF CLP DJF GNF ISK JPY KMF KRW PYG RWF UGX VND VUV XAF XOF XPF".split(), 0
    ),
    **dict.fromkeys("BHD IQD JOD KWD LYD OMR TND".split(), 3),
}


def currency_decimal_places(currency: str) -> int:
    return CURRENCY_DECIMAL_PLACES.get(currency, MONEY_DECIMAL_PLACES)


def require_minor_units(amount: Decimal, currency: str) -> Decimal:
    """
    Reject amounts finer than the currency's minor unit (10.005 USD).

    Raises:
        InvalidAmountError: if rounding to the currency would change the amount.
    """
    places = currency_decimal_places(currency)
    if round_money(amount, places) != amount:
        raise InvalidAmountError(amount, f"{currency} amounts carry at most {places} decimal places")
    return amount


def validate_currency(currency: str) -> str:
    """
    Validate and normalise an ISO 4217 currency code.

    Returns:
        The upper-cased code.

    Raises:
        InvalidCurrencyError: if the code is not a known ISO 4217 code.
    """
    if not isinstance(currency, str):
        raise InvalidCurrencyError(str(currency))
    normalized = currency.strip().upper()
    if normalized not in ISO_4217_CURRENCIES:
        raise InvalidCurrencyError(currency)
    return normalized


def enum_value(value) -> str:
    """Stored string for an enum member or a value loaded back as a plain str."""
    return str(getattr(value, "value", value))
