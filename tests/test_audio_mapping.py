"""Tests for audio energy → effect driver mapping."""

import pytest

from render_service.recipes.models import AudioFrame, AudioMappingConfig
from render_service.render.audio_mapping import HIGH_CAP, LOW_CAP, MID_CAP, AudioReactor


class TestAudioReactor:
    def test_silence_maps_to_zero(self):
        reactor = AudioReactor(AudioMappingConfig())
        for _ in range(10):
            drive = reactor.map(AudioFrame())
        assert (drive.low, drive.mid, drive.high) == (0.0, 0.0, 0.0)

    def test_onset_produces_pulse(self):
        reactor = AudioReactor(AudioMappingConfig())
        quiet = reactor.map(AudioFrame(low=0.0))
        hit = reactor.map(AudioFrame(low=0.9))
        assert hit.low > quiet.low
        assert hit.low > 0

    def test_drivers_capped(self):
        loud = AudioMappingConfig(global_gain=100.0)
        reactor = AudioReactor(loud)
        drive = None
        for level in (0.0, 1.0, 0.0, 1.0, 1.0):
            drive = reactor.map(AudioFrame(low=level, mid=level, high=level))
        assert drive.low <= LOW_CAP
        assert drive.mid <= MID_CAP
        assert drive.high <= HIGH_CAP

    def test_out_of_range_input_clamped(self):
        a = AudioReactor(AudioMappingConfig()).map(AudioFrame(low=1.0))
        b = AudioReactor(AudioMappingConfig()).map(AudioFrame(low=5.0))
        assert a.low == pytest.approx(b.low)

    def test_zero_gain_silences_band(self):
        mapping = AudioMappingConfig(global_gain=0.0)
        drive = AudioReactor(mapping).map(AudioFrame(low=1.0, mid=1.0, high=1.0))
        assert (drive.low, drive.mid, drive.high) == (0.0, 0.0, 0.0)

    def test_reset_restores_initial_state(self):
        reactor = AudioReactor(AudioMappingConfig())
        first = reactor.map(AudioFrame(low=0.7, mid=0.3))
        reactor.map(AudioFrame(low=0.1))
        reactor.reset()
        assert reactor.map(AudioFrame(low=0.7, mid=0.3)) == first
