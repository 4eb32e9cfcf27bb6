import time

def now_ms() -> int:
    return int(time.time() * 1000)

def elapsed_ms(start_monotonic: float) -> int:
    """Milliseconds since a time.monotonic() reading, clamped to >= 0."""
    return max(0, int((time.monotonic() - start_monotonic) * 1000))
