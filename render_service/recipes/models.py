"""Recipe data model: a declarative description of one audio-reactive render.

Recipes arrive from the browser in camelCase; both camelCase and snake_case
keys are accepted. Once built, a Recipe is frozen.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from render_service.transcode.profiles import TranscodeOptions

_MODEL_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "frozen": True,
}

OutputFormat = Literal["mp4", "webm", "gif"]


class RecipeMeta(BaseModel):
    duration: float
    fps: int
    width: int
    height: int
    total_frames: int
    title: Optional[str] = None

    model_config = _MODEL_CONFIG


class ImageSource(BaseModel):
    source: str
    width: Optional[int] = None
    height: Optional[int] = None

    model_config = _MODEL_CONFIG


class AudioSource(BaseModel):
    source: str
    sample_rate: Optional[int] = None

    model_config = _MODEL_CONFIG


class AudioFrame(BaseModel):
    """Per-frame band energy in [0, 1]."""
    low: float = 0.0
    mid: float = 0.0
    high: float = 0.0

    model_config = _MODEL_CONFIG


class AudioMappingConfig(BaseModel):
    global_gain: float = 0.75
    low_base_gain: float = 0.65
    low_dyn_gain: float = 8.0
    mid_base_gain: float = 0.65
    mid_dyn_gain: float = 7.0
    high_base_gain: float = 0.65
    high_dyn_gain: float = 6.0

    model_config = _MODEL_CONFIG


class BreathingEffect(BaseModel):
    scale: float = 0.15

    model_config = _MODEL_CONFIG


class ChromaticAberrationEffect(BaseModel):
    intensity: float = 1.0

    model_config = _MODEL_CONFIG


class FilmGrainEffect(BaseModel):
    amount: float = 0.08

    model_config = _MODEL_CONFIG


class VignetteEffect(BaseModel):
    strength: float = 0.3

    model_config = _MODEL_CONFIG


class EffectConfig(BaseModel):
    breathing: BreathingEffect = Field(default_factory=BreathingEffect)
    chromatic_aberration: ChromaticAberrationEffect = Field(
        default_factory=ChromaticAberrationEffect
    )
    film_grain: FilmGrainEffect = Field(default_factory=FilmGrainEffect)
    vignette: VignetteEffect = Field(default_factory=VignetteEffect)
    audio_mapping: AudioMappingConfig = Field(default_factory=AudioMappingConfig)

    model_config = _MODEL_CONFIG


class OutputSpec(BaseModel):
    format: OutputFormat = "mp4"
    options: TranscodeOptions = Field(default_factory=TranscodeOptions)

    model_config = _MODEL_CONFIG


class Recipe(BaseModel):
    """A validated, immutable render recipe."""
    version: str
    meta: RecipeMeta
    image: ImageSource
    audio: Optional[AudioSource] = None
    frames: List[AudioFrame]
    effects: EffectConfig = Field(default_factory=EffectConfig)
    output: OutputSpec = Field(default_factory=OutputSpec)

    model_config = _MODEL_CONFIG

    def frame_at(self, index: int) -> AudioFrame:
        """Audio frame for ``index``; frames past the end are silent."""
        if index < len(self.frames):
            return self.frames[index]
        return _SILENCE


_SILENCE = AudioFrame()
