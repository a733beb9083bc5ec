"""
overlay-apply renders base/overlay configuration trees and applies them to a
cluster with an explicit, ordered plan.

The library is organized as a pipeline:
  - `loader` reads the index files of an overlay and everything it references
  - `generator` expands config and secret generators into documents
  - `patch` merges strategic-merge and field operation patches
  - `builder` runs the stages above into a resolved manifest set
  - `plan` diffs the manifest set against the previous state
  - `applier` issues the plan to a `cluster` endpoint and returns the new state
"""

__all__ = [
    "applier",
    "builder",
    "cluster",
    "config",
    "exceptions",
    "generator",
    "loader",
    "manifest",
    "patch",
    "plan",
    "state",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
