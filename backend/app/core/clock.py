from datetime import datetime, timezone


class SystemClock:
    """Wall clock in UTC. Orchestrators take a clock so tests can freeze time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = SystemClock()
