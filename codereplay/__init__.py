"""Code Replay.

Records candidates' editor activity during coding assessments and replays
it for reviewers with seek, speed control, pause bands and run markers.
"""

__version__ = "0.1.0"
