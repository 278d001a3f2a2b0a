"""Turns raw per-frame band energy into smoothed effect drivers.

Raw energy is normalised against a slow-moving baseline, smoothed, and
boosted by onset deltas.
"""

from dataclasses import dataclass

from render_service.recipes.models import AudioFrame, AudioMappingConfig

# Effect drivers are capped so extreme input cannot blow out the image
LOW_CAP = 3.0
MID_CAP = 2.5
HIGH_CAP = 3.0

DELTA_SCALE = 0.5


def _lerp(current: float, target: float, factor: float) -> float:
    return current + (target - current) * factor


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class AudioDrive:
    low: float
    mid: float
    high: float


class AudioReactor:
    """Stateful mapper; feed frames in order, one call per video frame."""

    def __init__(self, mapping: AudioMappingConfig):
        self.mapping = mapping
        self.reset()

    def reset(self) -> None:
        self._smooth = [0.0, 0.0, 0.0]
        self._smooth_delta = [0.0, 0.0, 0.0]
        self._prev_raw = [0.0, 0.0, 0.0]
        self._baseline = [0.0, 0.0, 0.0]

    def map(self, frame: AudioFrame) -> AudioDrive:
        raw = [_clamp01(frame.low), _clamp01(frame.mid), _clamp01(frame.high)]

        # (baseline weight, smoothing factor, delta attack, delta release) per band
        bands = ((0.5, 0.25, 0.6, 0.15), (0.3, 0.2, 0.5, 0.12), (0.3, 0.2, 0.5, 0.12))

        for i, (base_weight, smooth_factor, attack, release) in enumerate(bands):
            self._baseline[i] = _lerp(self._baseline[i], raw[i], 0.01)
            floor = self._baseline[i] * base_weight
            relative = max(0.0, (raw[i] - floor) / max(1e-3, 1 - floor))
            self._smooth[i] = _lerp(self._smooth[i], relative, smooth_factor)

            delta = max(0.0, raw[i] - self._prev_raw[i])
            self._prev_raw[i] = raw[i]
            rate = attack if delta > self._smooth_delta[i] else release
            self._smooth_delta[i] = _lerp(self._smooth_delta[i], delta, rate)

        m = self.mapping
        low = self._smooth[0] * m.low_base_gain + self._smooth_delta[0] * DELTA_SCALE * m.low_dyn_gain
        mid = self._smooth[1] * m.mid_base_gain + self._smooth_delta[1] * DELTA_SCALE * m.mid_dyn_gain
        high = self._smooth[2] * m.high_base_gain + self._smooth_delta[2] * DELTA_SCALE * m.high_dyn_gain

        return AudioDrive(
            low=min(low * m.global_gain, LOW_CAP),
            mid=min(mid * m.global_gain, MID_CAP),
            high=min(high * m.global_gain, HIGH_CAP),
        )
