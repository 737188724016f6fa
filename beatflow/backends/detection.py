"""Detect which tracker a repository uses from its marker directory."""

from pathlib import Path

TRACKER_KNOTS = "knots"
TRACKER_BEADS = "beads"

# Checked in order; knots wins when a repo carries both markers
TRACKER_MARKERS = (
    (TRACKER_KNOTS, ".knots"),
    (TRACKER_BEADS, ".beads"),
)


def detect_tracker(repo_path: str | Path) -> str | None:
    root = Path(repo_path)
    for tracker, marker in TRACKER_MARKERS:
        if (root / marker).is_dir():
            return tracker
    return None
