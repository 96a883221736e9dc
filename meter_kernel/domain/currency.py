"""Currency -- registry of the ledger's currencies and explicit rounding."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import ClassVar

from meter_kernel.exceptions import InvalidCurrencyError

MONEY_QUANTUM = Decimal("0.01")
RATE_QUANTUM = Decimal("0.0001")
QUANTITY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single currency."""

    code: str
    decimal_places: int
    name: str

    @property
    def rounding_tolerance(self) -> Decimal:
        """Smallest representable unit in this currency."""
        if self.decimal_places == 0:
            return Decimal("1")
        return Decimal("0." + "0" * (self.decimal_places - 1) + "1")

    @property
    def quantize_string(self) -> str:
        if self.decimal_places == 0:
            return "1"
        return "0." + "0" * self.decimal_places


class CurrencyRegistry:
    """Registry of the currencies a household ledger deals in."""

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        "USD": CurrencyInfo("USD", 2, "US Dollar"),
        "ZWG": CurrencyInfo("ZWG", 2, "Zimbabwe Gold"),
        "ZWL": CurrencyInfo("ZWL", 2, "Zimbabwean Dollar"),
        "ZAR": CurrencyInfo("ZAR", 2, "South African Rand"),
        "EUR": CurrencyInfo("EUR", 2, "Euro"),
        "GBP": CurrencyInfo("GBP", 2, "Pound Sterling"),
    }

    @classmethod
    def is_valid(cls, code: str) -> bool:
        return code.upper().strip() in cls._CURRENCIES if code else False

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        return cls._CURRENCIES.get(code.upper().strip()) if code else None

    @classmethod
    def validate(cls, code: str) -> str:
        """
        Return the normalized code.

        Raises:
            InvalidCurrencyError: If the code is not registered.
        """
        normalized = code.upper().strip() if code else ""
        if normalized not in cls._CURRENCIES:
            raise InvalidCurrencyError(code)
        return normalized


def to_decimal(value: Decimal | int | str | float | None) -> Decimal:
    """Coerce a number to Decimal via its string form (never via binary float)."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def round_money(value: Decimal) -> Decimal:
    """Round a currency amount to 2 places, half up."""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def round_rate(value: Decimal) -> Decimal:
    """Round an exchange rate or per-kWh price to 4 places, half up."""
    return to_decimal(value).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def round_quantity(value: Decimal) -> Decimal:
    """Round a kWh quantity to 2 places, half up."""
    return to_decimal(value).quantize(QUANTITY_QUANTUM, rounding=ROUND_HALF_UP)
