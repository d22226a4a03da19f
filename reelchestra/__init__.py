"""
reelchestra - Video production job orchestrator

Compiles creative treatments into a manifest and a DAG of generation jobs,
stores them in a job ledger and runs one worker runtime per job type.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["ReelchestraConfig", "load_config", "get_reelchestra_home"]

from .config import ReelchestraConfig, load_config, get_reelchestra_home
