"""Delay promotion and stall recovery."""

from jobengine.sweeper.sweeper import Sweeper

__all__ = ["Sweeper"]
