"""Folder scanning, pattern detection and topology analysis."""

from .patterns import PatternDetector, Signals
from .snapshot import FolderSnapshot
from .topology import TopologyAnalyzer

__all__ = ["FolderSnapshot", "PatternDetector", "Signals", "TopologyAnalyzer"]
