"""
Ramp-driven HTTP load harness.

This package ramps virtual users up and down through configured stages, records
per-request metric samples, and evaluates pass/fail thresholds such as
``p(99)<500`` or ``rate<0.001`` once the run is over.
"""

from .main import execute, run

__all__ = ["execute", "run"]
