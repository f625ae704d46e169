from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, getcontext

# enough headroom for large batch totals
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value) -> Decimal:
    """
    coerce ints / strings / decimals into a Decimal.
    floats go through str() so 0.1 stays 0.1.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def q(amount) -> Decimal:
    """round down to cents. leftovers are handled by the caller (usually the operator)."""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_DOWN)


def pct(amount, percent) -> Decimal:
    """percent of amount, rounded down to cents."""
    return q(to_decimal(amount) * to_decimal(percent) / Decimal("100"))


def floor_zero(amount) -> Decimal:
    amount = to_decimal(amount)
    return amount if amount > 0 else ZERO


def take(pool, target):
    """
    take min(pool, target) out of the pool.
    returns (taken, remaining_pool). never overdraws, never goes negative.
    """
    pool = floor_zero(pool)
    target = floor_zero(target)
    taken = min(pool, target)
    return taken, pool - taken


def round_units(value) -> int:
    """round a fractional unit count half-up to an int (2.5 -> 3)."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fmt(amount) -> str:
    """serialize money as a fixed 2-decimal string for json payloads."""
    return f"{to_decimal(amount):.2f}"
