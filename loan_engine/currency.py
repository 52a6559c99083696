"""
Currency and Money Module

Every amount in the engine is a Money: a Decimal held at the minor unit of its
currency. Rounding is ROUND_HALF_UP and happens whenever a Money is built, so
sums, products and quotients come out already rounded. Floats are never used
for amounts.
"""

import operator
import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Callable, Iterable, Union

getcontext().prec = 28

Number = Union[Decimal, int, str]

_NOT_NUMERIC = re.compile(r'[^0-9.,+\-]')


def _as_decimal(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class Currency(Enum):
    """Supported ISO 4217 currencies and their number of minor-unit digits"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)

    def __init__(self, code: str, digits: int):
        self.code = code
        self.precision = digits

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD"""
        return Decimal(1).scaleb(-self.precision)


@dataclass(frozen=True)
class Money:
    """
    Immutable amount in a single currency.

    The amount is quantized on construction. Operations that combine two
    Money values require the same currency and raise ValueError otherwise.
    """
    amount: Decimal
    currency: Currency = Currency.USD

    def __post_init__(self):
        quantized = _as_decimal(self.amount).quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', quantized)

    @classmethod
    def zero(cls, currency: Currency = Currency.USD) -> 'Money':
        return cls(Decimal(0), currency)

    @classmethod
    def total(cls, values: Iterable['Money'], currency: Currency) -> 'Money':
        """Sum of the given amounts; zero when there are none"""
        accumulated = cls.zero(currency)
        for value in values:
            accumulated += value
        return accumulated

    def _same_currency(self, other: object, verb: str) -> 'Money':
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if other.currency is not self.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")
        return other

    def _compare(self, other: object, op: Callable[[Decimal, Decimal], bool]) -> bool:
        return op(self.amount, self._same_currency(other, "compare").amount)

    def __add__(self, other: 'Money') -> 'Money':
        return Money(self.amount + self._same_currency(other, "add").amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        return Money(self.amount - self._same_currency(other, "subtract").amount, self.currency)

    def __mul__(self, factor: Number) -> 'Money':
        return Money(self.amount * _as_decimal(factor), self.currency)

    def __truediv__(self, divisor: Number) -> 'Money':
        return Money(self.amount / _as_decimal(divisor), self.currency)

    def __neg__(self) -> 'Money':
        return Money(self.amount.copy_negate(), self.currency)

    def __abs__(self) -> 'Money':
        return Money(self.amount.copy_abs(), self.currency)

    def __eq__(self, other) -> bool:
        return (isinstance(other, Money)
                and other.currency is self.currency
                and other.amount == self.amount)

    def __hash__(self) -> int:
        return hash((self.currency, self.amount))

    def __lt__(self, other: 'Money') -> bool:
        return self._compare(other, operator.lt)

    def __le__(self, other: 'Money') -> bool:
        return self._compare(other, operator.le)

    def __gt__(self, other: 'Money') -> bool:
        return self._compare(other, operator.gt)

    def __ge__(self, other: 'Money') -> bool:
        return self._compare(other, operator.ge)

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """Human readable form with thousands separators, e.g. 'USD 8,606.64'"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def decimal_from_string(value: str) -> Decimal:
    """
    Parse an amount typed by a person into a Decimal

    Currency symbols and spaces are dropped. When both ',' and '.' appear the
    comma is a thousands separator; a lone comma followed by at most two
    digits is a decimal comma.

    Raises:
        ValueError: If nothing numeric remains or the result is not a number
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Value must be a non-empty string")

    digits = _NOT_NUMERIC.sub('', value)
    if ',' in digits:
        head, _, tail = digits.rpartition(',')
        if '.' not in digits and digits.count(',') == 1 and len(tail) <= 2:
            digits = f"{head}.{tail}"
        else:
            digits = digits.replace(',', '')

    try:
        return Decimal(digits)
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")
