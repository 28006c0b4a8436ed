"""
Burst Module - Multi-Shot Measurement Aggregation

A measuring session takes several face shots in a row. This module keeps
the best-scoring shots and smooths their pupillary distances with a
Kalman filter to reduce frame-to-frame noise.
"""

import numpy as np
import cv2
from typing import Optional, List, Tuple, Generic, TypeVar, Callable
from dataclasses import dataclass, field


T = TypeVar("T")

TYPICAL_PD_MM = 63.0


class TemporalMeasurementFilter:
    """
    1-D Kalman filter over successive measurements (mm).

    The state is the measurement itself (constant model plus process
    noise); low-confidence samples get proportionally more measurement
    noise.
    """

    def __init__(
        self,
        process_noise: float = 0.1,
        measurement_noise: float = 0.5,
        initial_value: Optional[float] = None
    ):
        """
        Initialize temporal filter.

        Args:
            process_noise: How much the value may change between shots
            measurement_noise: Uncertainty of a single measurement
            initial_value: Starting state (typical PD when None)
        """
        self.kf = cv2.KalmanFilter(1, 1)
        self.kf.transitionMatrix = np.array([[1.0]], dtype=np.float32)
        self.kf.measurementMatrix = np.array([[1.0]], dtype=np.float32)
        self.kf.processNoiseCov = np.array([[process_noise]], dtype=np.float32)

        self.base_measurement_noise = measurement_noise
        self.kf.measurementNoiseCov = np.array([[measurement_noise]], dtype=np.float32)

        self.reset(initial_value)

    def update(self, value: float, confidence: float = 1.0) -> float:
        """
        Add a measurement.

        Args:
            value: Measured value (mm)
            confidence: 0-1, lower means less weight

        Returns:
            Filtered value
        """
        # First sample seeds the state instead of being pulled toward the prior
        if self.measurement_count == 0:
            self._set_state(value)

        noise = self.base_measurement_noise / max(confidence, 0.1)
        self.kf.measurementNoiseCov = np.array([[noise]], dtype=np.float32)

        self.kf.predict()
        self.kf.correct(np.array([[value]], dtype=np.float32))

        self.measurement_count += 1
        return float(self.kf.statePost[0, 0])

    def predict(self) -> float:
        """Predict the next value without a measurement."""
        prediction = self.kf.predict()
        return float(prediction[0, 0])

    def _set_state(self, value: float):
        self.kf.statePre = np.array([[value]], dtype=np.float32)
        self.kf.statePost = np.array([[value]], dtype=np.float32)

    def reset(self, initial_value: Optional[float] = None):
        """Reset filter to initial state."""
        self._set_state(TYPICAL_PD_MM if initial_value is None else initial_value)
        self.kf.errorCovPost = np.array([[1.0]], dtype=np.float32)
        self.measurement_count = 0

    @property
    def value(self) -> float:
        return float(self.kf.statePost[0, 0])

    def get_uncertainty(self) -> float:
        """Standard deviation of the filtered value (mm)."""
        return float(np.sqrt(self.kf.errorCovPost[0, 0]))


def filter_sequence(
    values: List[float],
    confidences: Optional[List[float]] = None,
    process_noise: float = 0.1,
    measurement_noise: float = 0.5
) -> Tuple[List[float], List[float]]:
    """
    Filter a sequence of measurements.

    Returns:
        Tuple of (filtered_values, uncertainties)
    """
    if confidences is None:
        confidences = [1.0] * len(values)

    kf = TemporalMeasurementFilter(process_noise=process_noise, measurement_noise=measurement_noise)

    filtered, uncertainties = [], []
    for value, conf in zip(values, confidences):
        filtered.append(kf.update(value, conf))
        uncertainties.append(kf.get_uncertainty())

    return filtered, uncertainties


@dataclass
class BurstShot(Generic[T]):
    item: T
    score: float
    index: int


@dataclass
class BurstSummary(Generic[T]):
    best: Optional[T]
    best_score: float
    kept: List[BurstShot] = field(default_factory=list)
    captured_count: int = 0
    filtered_value_mm: Optional[float] = None
    uncertainty_mm: Optional[float] = None


class BurstAggregator(Generic[T]):
    """
    Keeps the top-K shots of a burst and a smoothed running measurement.

    Usage:
        burst = BurstAggregator(top_k=3, value_of=lambda r: r.dnp_total_mm)
        for result in results:
            burst.add(result, score=result.confidence)
        summary = burst.summary()
    """

    def __init__(
        self,
        top_k: int = 3,
        value_of: Optional[Callable[[T], Optional[float]]] = None,
        process_noise: float = 0.1,
        measurement_noise: float = 0.5
    ):
        self.top_k = max(1, top_k)
        self.value_of = value_of
        self.filter = TemporalMeasurementFilter(process_noise, measurement_noise)
        self.kept: List[BurstShot] = []
        self.captured_count = 0

    def add(self, item: T, score: float, confidence: float = 1.0) -> bool:
        """
        Offer a shot to the burst.

        Returns:
            True if the shot is among the current top-K
        """
        index = self.captured_count
        self.captured_count += 1

        if self.value_of is not None:
            value = self.value_of(item)
            if value is not None and np.isfinite(value):
                self.filter.update(float(value), confidence)

        worst = min((s.score for s in self.kept), default=float("-inf"))
        if len(self.kept) < self.top_k or score > worst:
            self.kept.append(BurstShot(item=item, score=score, index=index))
            self.kept.sort(key=lambda s: s.score, reverse=True)
            del self.kept[self.top_k:]
            return any(s.index == index for s in self.kept)
        return False

    def summary(self) -> BurstSummary:
        best = self.kept[0] if self.kept else None
        has_values = self.filter.measurement_count > 0
        return BurstSummary(
            best=best.item if best else None,
            best_score=best.score if best else float("-inf"),
            kept=list(self.kept),
            captured_count=self.captured_count,
            filtered_value_mm=self.filter.value if has_values else None,
            uncertainty_mm=self.filter.get_uncertainty() if has_values else None,
        )
