"""Count-rate and coincidence-rate measurements with Poisson uncertainties.

Every measurement follows the same clear / wait / read pattern: a counts read
clears the on-device counters, we wait for the measurement window (the wait
can be aborted through an `asyncio.Event`), then read the counters again.
Commands already on the wire are never interrupted; cancellation is only
honoured during the wait, and an aborted measurement performs no further
reads.

Uncertainties
-------------
Counts are Poisson distributed, so sigma_N = sqrt(N). For a window of length
T, the rate uncertainty is sigma_N / T. The accidental coincidence rate for
a coincidence window tau is

    R_acc = 2 * tau * R_a * R_b

with uncertainty propagated from sigma_a and sigma_b, and the true rate is
max(0, R_coinc - R_acc).
"""

from __future__ import annotations

import asyncio
import math
from typing import TYPE_CHECKING, Sequence

import numpy as np
from loguru import logger

from cd48.types.config import CoincidenceOptions
from cd48.types.errors import OperationAbortedError, ValidationError
from cd48.types.measurements import (
    CoincidenceMeasurement,
    CoincidenceUncertainty,
    RateMeasurement,
    RateUncertainty,
)
from cd48.types.validation import validate_channel, validate_duration
from cd48.util.defaults import ACCIDENTAL_RATE_MULTIPLIER, DEFAULT_MEASUREMENT_DURATION

if TYPE_CHECKING:
    from cd48.device.cd48 import CD48


def poisson_uncertainty(n: float) -> float:
    return math.sqrt(max(0, n))


def rate_from_counts(channel: int, counts: int, duration: float) -> RateMeasurement:
    """Build a `RateMeasurement` from a raw count over `duration` seconds."""
    sigma = poisson_uncertainty(counts)
    return RateMeasurement(
        channel=channel,
        counts=counts,
        duration=duration,
        rate=counts / duration,
        uncertainty=RateUncertainty(
            counts=sigma,
            rate=sigma / duration,
            relative=sigma / counts * 100 if counts > 0 else 0.0,
        ),
    )


def coincidence_from_counts(
    singles_a: int,
    singles_b: int,
    coincidences: int,
    duration: float,
    coincidence_window: float,
) -> CoincidenceMeasurement:
    """Build a `CoincidenceMeasurement` from raw counts.

    Parameters
    ----------
    singles_a, singles_b : int
        Singles counts on the two detectors.
    coincidences : int
        Coincidence counts.
    duration : float
        Measurement window, seconds.
    coincidence_window : float
        Coincidence resolving time tau, seconds.
    """
    rate_a = singles_a / duration
    rate_b = singles_b / duration
    coincidence_rate = coincidences / duration
    accidental_rate = ACCIDENTAL_RATE_MULTIPLIER * coincidence_window * rate_a * rate_b
    true_coincidence_rate = max(0.0, coincidence_rate - accidental_rate)

    sigma_a = poisson_uncertainty(singles_a)
    sigma_b = poisson_uncertainty(singles_b)
    sigma_c = poisson_uncertainty(coincidences)
    coincidence_rate_unc = sigma_c / duration
    accidental_unc = (ACCIDENTAL_RATE_MULTIPLIER * coincidence_window / duration) * (
        math.sqrt((rate_b * sigma_a) ** 2 + (rate_a * sigma_b) ** 2)
    )

    return CoincidenceMeasurement(
        singles_a=singles_a,
        singles_b=singles_b,
        coincidences=coincidences,
        duration=duration,
        rate_a=rate_a,
        rate_b=rate_b,
        coincidence_rate=coincidence_rate,
        accidental_rate=accidental_rate,
        true_coincidence_rate=true_coincidence_rate,
        coincidence_window=coincidence_window,
        uncertainty=CoincidenceUncertainty(
            singles_a=sigma_a,
            singles_b=sigma_b,
            coincidences=sigma_c,
            rate_a=sigma_a / duration,
            rate_b=sigma_b / duration,
            coincidence_rate=coincidence_rate_unc,
            accidental_rate=accidental_unc,
            true_coincidence_rate=math.sqrt(
                coincidence_rate_unc**2 + accidental_unc**2
            ),
        ),
    )


def _check_cancel(cancel: asyncio.Event | None, operation: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationAbortedError(operation)


async def sleep_with_abort(
    seconds: float, cancel: asyncio.Event | None = None, operation: str = "sleep"
) -> None:
    """Sleep for `seconds`, raising `OperationAbortedError` if `cancel` is set."""
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    _check_cancel(cancel, operation)
    try:
        await asyncio.wait_for(cancel.wait(), seconds)
    except asyncio.TimeoutError:
        return
    raise OperationAbortedError(operation)


async def measure_rate(
    device: CD48,
    channel: int = 0,
    duration: float = DEFAULT_MEASUREMENT_DURATION,
    cancel: asyncio.Event | None = None,
) -> RateMeasurement:
    """Measure the count rate on one channel over `duration` seconds."""
    validate_channel(channel, device.options.channel_count - 1)
    validate_duration(duration)
    _check_cancel(cancel, "measure_rate")

    await device.clear_counts()
    await sleep_with_abort(duration, cancel, "measure_rate")
    data = await device.get_counts()

    result = rate_from_counts(channel, data[channel], duration)
    logger.info(
        "Channel {} rate: {:.3f} +/- {:.3f} /s ({} counts in {}s)",
        channel,
        result.rate,
        result.uncertainty.rate,
        result.counts,
        duration,
    )
    return result


async def measure_coincidence_rate(
    device: CD48,
    options: CoincidenceOptions | None = None,
    cancel: asyncio.Event | None = None,
) -> CoincidenceMeasurement:
    """Measure singles and coincidence rates, correcting for accidentals."""
    opts = options if options is not None else CoincidenceOptions()
    opts.validate(device.options.channel_count - 1)
    _check_cancel(cancel, "measure_coincidence_rate")

    await device.clear_counts()
    await sleep_with_abort(opts.duration, cancel, "measure_coincidence_rate")
    data = await device.get_counts()

    result = coincidence_from_counts(
        data[opts.singles_a_channel],
        data[opts.singles_b_channel],
        data[opts.coincidence_channel],
        opts.duration,
        opts.coincidence_window,
    )
    logger.info(
        "Coincidence rate: {:.3f} /s (accidental {:.3g} /s, true {:.3f} /s)",
        result.coincidence_rate,
        result.accidental_rate,
        result.true_coincidence_rate,
    )
    return result


async def measure_rate_series(
    device: CD48,
    channel: int = 0,
    duration: float = DEFAULT_MEASUREMENT_DURATION,
    repeats: int = 10,
    cancel: asyncio.Event | None = None,
) -> list[RateMeasurement]:
    """Back-to-back `measure_rate` windows, e.g. for drift checks."""
    if isinstance(repeats, bool) or not isinstance(repeats, int) or repeats < 1:
        raise ValidationError("repeats", repeats, "integer >= 1")
    series = []
    for i in range(repeats):
        _check_cancel(cancel, "measure_rate_series")
        logger.debug("Rate series window {}/{}", i + 1, repeats)
        series.append(await measure_rate(device, channel, duration, cancel))
    return series


def summarize_rates(measurements: Sequence[RateMeasurement]) -> dict[str, float]:
    """Mean, sample standard deviation and standard error of a rate series."""
    if not measurements:
        raise ValidationError("measurements", measurements, "at least one measurement")
    rates = np.array([m.rate for m in measurements], dtype=float)
    n = len(rates)
    std = float(rates.std(ddof=1)) if n > 1 else 0.0
    return {
        "n": n,
        "mean": float(rates.mean()),
        "std": std,
        "sem": std / math.sqrt(n),
        "total_counts": int(sum(m.counts for m in measurements)),
    }
