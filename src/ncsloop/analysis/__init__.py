"""
Analysis layer: derived quantities for reporting and comparison.

IMPORTANT: This is NOT seen by the loop. One-way derivation only.

- mode_histogram: how often each actuator mode was active
- empirical_delay_distribution: per-channel delay frequencies
- summarize_run: costs, discard and send rates of a finished run
"""

from ncsloop.analysis.performance import (
    LoopSummary,
    mode_histogram,
    empirical_delay_distribution,
    summarize_run,
)

__all__ = [
    "LoopSummary",
    "mode_histogram",
    "empirical_delay_distribution",
    "summarize_run",
]
