"""
Commit Tracker for TDD cycle metrics.

This service is responsible for:
- Reading the just-made commit from the local Git repository
- Classifying it into a RED/GREEN/REFACTOR/TIDY/OTHER phase
- Pairing RED and GREEN commits per branch into cycle durations
- Appending every commit to the local cycle log
- Forwarding records to Langfuse in the background
"""

__version__ = "1.0.0"
__description__ = "Commit-driven TDD cycle telemetry"
