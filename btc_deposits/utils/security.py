"""Security helpers for log output."""


def mask_address(address: str | None, visible: int = 8) -> str:
    """
    Mask address for logging.

    Args:
        address: Bitcoin address
        visible: Number of leading characters to keep

    Returns:
        Masked address, e.g. "tb1q1234...cdef"
    """
    if not address:
        return "<none>"
    if len(address) <= visible + 4:
        return address
    return f"{address[:visible]}...{address[-4:]}"
