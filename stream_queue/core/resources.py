import psutil


def memory_usage() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss


def format_bytes(num_bytes: int) -> str:
    units = ["B", "KB", "MB", "GB"]
    value = float(max(num_bytes, 0))
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2)} {units[unit]}"
