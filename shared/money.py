"""
Денежная арифметика с фиксированной точкой
"""
from datetime import timedelta
from decimal import Context, Decimal, ROUND_DOWN, localcontext
from typing import Union

from shared.config import SECONDS_IN_DAY

# 18 знаков после запятой, как у ставок вида 0.00000003 в секунду
MONEY_SCALE = 18
MONEY_QUANT = Decimal(1).scaleb(-MONEY_SCALE)
MONEY_CONTEXT = Context(prec=60, rounding=ROUND_DOWN)
ZERO = Decimal("0")

Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    """Привести значение к Decimal без потерь (float запрещён)"""
    if isinstance(value, float):
        raise TypeError("float values are not allowed for money, use str or Decimal")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Number) -> Decimal:
    """Округлить вниз до 18 знаков"""
    with localcontext(MONEY_CONTEXT):
        return to_decimal(value).quantize(MONEY_QUANT)


def multiply(*values: Number) -> Decimal:
    """Произведение в расширенном контексте с округлением результата"""
    with localcontext(MONEY_CONTEXT):
        result = Decimal(1)
        for value in values:
            result = result * to_decimal(value)
        return result.quantize(MONEY_QUANT)


def add(a: Number, b: Number) -> Decimal:
    with localcontext(MONEY_CONTEXT):
        return (to_decimal(a) + to_decimal(b)).quantize(MONEY_QUANT)


def elapsed_seconds(delta: timedelta) -> Decimal:
    """Точное число секунд в timedelta (с микросекундами)"""
    with localcontext(MONEY_CONTEXT):
        whole = Decimal(delta.days * SECONDS_IN_DAY + delta.seconds)
        return whole + Decimal(delta.microseconds).scaleb(-6)


def divide(a: Number, b: Number) -> Decimal:
    with localcontext(MONEY_CONTEXT):
        return (to_decimal(a) / to_decimal(b)).quantize(MONEY_QUANT)


def daily_to_per_second(daily_rate: Number) -> Decimal:
    """Дневная ставка (доля) -> ставка в секунду"""
    return divide(daily_rate, SECONDS_IN_DAY)
