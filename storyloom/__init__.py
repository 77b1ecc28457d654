"""Storyloom - AI generation pipeline for branching story timelines"""

from __future__ import annotations

__version__ = "0.1.0"
