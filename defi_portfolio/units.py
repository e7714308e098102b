"""Exact conversions between raw on-chain integers and human decimal values."""

from decimal import Decimal, ROUND_HALF_UP, localcontext

RAY = 10**27
WAD = 10**18

# Wide enough for 78-digit uint256 values multiplied by prices
DECIMAL_PRECISION = 120

CENT = Decimal("0.01")


def format_units(value: int, decimals: int) -> str:
    """Render a raw integer amount as a decimal string without rounding.

    Mirrors the usual wallet formatting: at least one fractional digit,
    trailing zeros stripped (``1000000, 6 -> "1.0"``).
    """
    negative = value < 0
    whole, fraction = divmod(abs(value), 10**decimals)
    if decimals > 0:
        fraction_str = str(fraction).rjust(decimals, "0").rstrip("0") or "0"
    else:
        fraction_str = "0"
    return f"{'-' if negative else ''}{whole}.{fraction_str}"


def to_decimal(value: int, decimals: int) -> Decimal:
    """Convert a raw integer amount into an exact Decimal."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(value).scaleb(-decimals)


def ray_to_percent(rate: int) -> str:
    """Convert a ray-scaled (1e27) rate into a percentage string with 2 decimals."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        percent = Decimal(rate) / Decimal(RAY) * 100
        return str(percent.quantize(CENT, rounding=ROUND_HALF_UP))


def per_block_rate_to_apy(rate_per_block: int, blocks_per_day: int, days_per_year: int = 365) -> str:
    """Compound-style APY from a per-block mantissa rate, as a percentage string."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        daily = Decimal(rate_per_block) / Decimal(WAD) * blocks_per_day
        apy = ((daily + 1) ** days_per_year - 1) * 100
        return str(apy.quantize(CENT, rounding=ROUND_HALF_UP))


def usd(value: Decimal) -> Decimal:
    """Quantize a USD amount to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)
