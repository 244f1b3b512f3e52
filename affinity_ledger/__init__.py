"""Affinity ledger: interaction events projected into profiles and leaderboards."""

from .app import create_app
from .bootstrap import bootstrap_pipeline

__all__ = ["create_app", "bootstrap_pipeline"]
