"""Immutable result types returned by the device and the measurement engine."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro import DataClassDictMixin


@dataclass(frozen=True)
class CountData(DataClassDictMixin):
    """One counts read: per-channel counts plus the overflow bitmask."""

    counts: tuple[int, ...]
    overflow: int

    def __getitem__(self, channel: int) -> int:
        return self.counts[channel]


@dataclass(frozen=True)
class RateUncertainty(DataClassDictMixin):
    counts: float  # sqrt(N)
    rate: float  # sqrt(N) / T
    relative: float  # percent


@dataclass(frozen=True)
class RateMeasurement(DataClassDictMixin):
    channel: int
    counts: int
    duration: float
    rate: float
    uncertainty: RateUncertainty


@dataclass(frozen=True)
class CoincidenceUncertainty(DataClassDictMixin):
    singles_a: float
    singles_b: float
    coincidences: float
    rate_a: float
    rate_b: float
    coincidence_rate: float
    accidental_rate: float
    true_coincidence_rate: float


@dataclass(frozen=True)
class CoincidenceMeasurement(DataClassDictMixin):
    singles_a: int
    singles_b: int
    coincidences: int
    duration: float
    rate_a: float
    rate_b: float
    coincidence_rate: float
    accidental_rate: float
    true_coincidence_rate: float
    coincidence_window: float
    uncertainty: CoincidenceUncertainty


@dataclass(frozen=True)
class FirmwareInfo(DataClassDictMixin):
    version_string: str
    major: int
    minor: int
    patch: int
    is_compatible: bool
    minimum_version: str

    @property
    def version(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"
