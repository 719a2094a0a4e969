"""Rate windows tracked per tenant by the rate budget."""

from pydantic import BaseModel, Field


class RateWindow(BaseModel):
    """A fixed interval over which a call-count quota is enforced."""

    window_start_time: float                # Clock reading when the window opened
    count: int = 0                          # Calls issued (or reported used) in this window
    limit: int = Field(gt=0)
    length_seconds: float = Field(gt=0)

    def expired(self, now: float) -> bool:
        return now - self.window_start_time >= self.length_seconds

    def roll(self, now: float) -> None:
        """Open a fresh window starting at `now`."""
        self.window_start_time = now
        self.count = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def seconds_until_reset(self, now: float) -> float:
        return max(0.0, self.window_start_time + self.length_seconds - now)
