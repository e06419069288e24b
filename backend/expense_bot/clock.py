import time


class Clock:
    """Monotonic time source, injectable so stores and deadlines can be tested."""

    def now(self) -> float:
        return time.monotonic()


SYSTEM_CLOCK = Clock()
