"""Retry delay policy."""


def backoff_delay_ms(base_delay: float, attempt: int) -> int:
    """Milliseconds to wait before retrying after ``attempt`` failed attempts.

    The delay doubles with every attempt, starting at ``base_delay`` seconds:
    ``base_delay * 2 ** (attempt - 1)``. No jitter, no cap.
    """
    if base_delay < 0:
        raise ValueError(f"base_delay must be >= 0, got {base_delay}")
    attempt = max(int(attempt), 1)
    return int(round(base_delay * (2 ** (attempt - 1)) * 1000))
