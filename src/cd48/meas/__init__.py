"""Measurements built on top of the typed CD48 commands."""

from .counting import (
    coincidence_from_counts,
    measure_coincidence_rate,
    measure_rate,
    measure_rate_series,
    poisson_uncertainty,
    rate_from_counts,
    sleep_with_abort,
    summarize_rates,
)
