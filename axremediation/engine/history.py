"""Rolling signal history for duration-sustained conditions."""

from collections import deque
from datetime import timedelta

from axremediation.models.signal import SignalSnapshot


class SignalHistory:
    """Time-bounded window of past snapshots, oldest first.

    Only the dispatcher appends to the history, between two evaluation passes;
    evaluators read it through ``samples`` which returns an immutable copy.
    """

    def __init__(self, window_seconds: float):
        self._window = timedelta(seconds=window_seconds)
        self._samples: deque[SignalSnapshot] = deque()

    def record(self, snapshot: SignalSnapshot) -> bool:
        """Append a snapshot and drop samples that left the window.

        Snapshots that are not newer than the latest sample are ignored.

        Returns:
            True if the snapshot was appended
        """
        if self._samples and snapshot.captured_at <= self._samples[-1].captured_at:
            return False

        self._samples.append(snapshot)
        cutoff = snapshot.captured_at - self._window
        while self._samples and self._samples[0].captured_at < cutoff:
            self._samples.popleft()
        return True

    @property
    def samples(self) -> tuple[SignalSnapshot, ...]:
        return tuple(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)
