"""Build orchestration module.

This module handles:
- Per-target workspace layout and locking
- Running the external kernel toolchain
- The ordered build stages and their runner
- Artifact archiving and publishing
- Manifest fragments and aggregation
"""

from kbuild_pipeline.builds.runner import Stage, StageContext

__all__ = ["Stage", "StageContext"]

# Submodules are imported explicitly, e.g. kbuild_pipeline.builds.service
