"""Progress snapshots and the GitPython progress adapter."""

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from git import RemoteProgress


@dataclass(frozen=True)
class Progress:
    """Last reported progress of a repository job."""
    normalized_progress: float = 0.0
    error: bool = False
    message: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "normalized_progress": self.normalized_progress,
            "error": self.error,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Progress":
        return cls(
            normalized_progress=float(data.get("normalized_progress", 0.0)),
            error=bool(data.get("error", False)),
            message=str(data.get("message", "")),
        )


# Stage -> (label, share of the operation's progress band start, end)
_STAGES: Dict[int, Tuple[str, float, float]] = {
    RemoteProgress.COUNTING: ("Counting objects", 0.0, 0.1),
    RemoteProgress.COMPRESSING: ("Compressing objects", 0.1, 0.25),
    RemoteProgress.FINDING_SOURCES: ("Finding sources", 0.0, 0.1),
    RemoteProgress.WRITING: ("Writing objects", 0.25, 1.0),
    RemoteProgress.RECEIVING: ("Receiving objects", 0.1, 0.75),
    RemoteProgress.RESOLVING: ("Resolving deltas", 0.75, 0.9),
    RemoteProgress.CHECKING_OUT: ("Checking out", 0.9, 1.0),
}


class JobProgressReporter(RemoteProgress):
    """
    Maps GitPython progress callbacks onto a slice of a job's overall progress.

    Args:
        publish: Called with (normalized_progress, message)
        band_start: Overall progress at the start of this git operation
        band_end: Overall progress at the end of this git operation
    """

    def __init__(self, publish: Callable[[float, str], None], band_start: float = 0.0, band_end: float = 1.0):
        super().__init__()
        self._publish = publish
        self.band_start = band_start
        self.band_end = band_end

    def update(self, op_code, cur_count, max_count=None, message=""):
        stage = op_code & self.OP_MASK
        label, stage_start, stage_end = _STAGES.get(stage, ("Working", 0.0, 1.0))

        stage_fraction = 0.0
        if max_count:
            stage_fraction = min(1.0, max(0.0, float(cur_count) / float(max_count)))
        if op_code & self.END:
            stage_fraction = 1.0

        within_band = stage_start + (stage_end - stage_start) * stage_fraction
        overall = self.band_start + (self.band_end - self.band_start) * within_band
        self._publish(overall, label)
