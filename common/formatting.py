"""Human-readable formatting helpers shared by the inspector and API errors."""

UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def format_bytes(size: int) -> str:
    """
    Format a byte count with a binary unit, e.g. ``500 MB`` or ``1.5 KB``.

    Args:
        size: Number of bytes

    Returns:
        Size rounded to two decimals with its unit
    """
    if size <= 0:
        return "0 Bytes"

    exponent = 0
    value = float(size)
    while value >= 1024 and exponent < len(UNITS) - 1:
        value /= 1024
        exponent += 1

    value = round(value, 2)
    if value == int(value):
        value = int(value)

    return f"{value} {UNITS[exponent]}"
