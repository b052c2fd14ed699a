"""
Human-readable formatting for traffic totals and uptime.
"""


def format_bytes(size: int) -> str:
    """Format a byte count with decimal units: 999 B, 1.50 KB, 12.3 MB, 250 GB."""
    if size < 1000:
        return f"{size} B"
    if size < 1_000_000:
        return _scaled(size / 1e3, "KB")
    if size < 1_000_000_000:
        return _scaled(size / 1e6, "MB")
    return _scaled(size / 1e9, "GB")


def _scaled(value: float, unit: str) -> str:
    if value < 10:
        return f"{value:.2f} {unit}"
    if value < 100:
        return f"{value:.1f} {unit}"
    return f"{value:.0f} {unit}"


def format_duration_ms(milliseconds: int) -> str:
    """Format a duration as '1h 2m 3s', '2m 3s' or '3s'."""
    seconds = max(0, int(milliseconds)) // 1000
    minutes = seconds // 60
    hours = minutes // 60

    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_clock_ms(milliseconds: int) -> str:
    """Format a duration as HH:MM:SS, or MM:SS under an hour."""
    seconds = max(0, int(milliseconds)) // 1000
    minutes = seconds // 60
    hours = minutes // 60

    if hours > 0:
        return f"{hours:02d}:{minutes % 60:02d}:{seconds % 60:02d}"
    return f"{minutes:02d}:{seconds % 60:02d}"
