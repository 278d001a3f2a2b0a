"""Frame compositing for audio-reactive cover renders."""

import math
from typing import Tuple

import numpy as np
from PIL import Image, ImageFilter

from render_service.recipes.models import EffectConfig
from render_service.render.audio_mapping import AudioDrive

# Portrait canvases letterbox the cover over a darkened, blurred copy
LETTERBOX_DIM = 0.35
LETTERBOX_BLUR_RADIUS = 12
LETTERBOX_BLUR_SCALE = 1.04

CHROMA_BASE_FACTOR = 0.02 * 0.8
BRIGHTNESS_GAIN = 0.8
VIGNETTE_LOW_RELIEF = 0.15

Box = Tuple[float, float, float, float]  # width, height, offset_x, offset_y


def cover_box(canvas_w: int, canvas_h: int, image_w: int, image_h: int) -> Box:
    """Size and offset that fill the canvas, cropping the overflow."""
    canvas_aspect = canvas_w / canvas_h
    image_aspect = image_w / image_h
    if image_aspect > canvas_aspect:
        w, h = canvas_h * image_aspect, float(canvas_h)
        return w, h, (canvas_w - w) / 2, 0.0
    w, h = float(canvas_w), canvas_w / image_aspect
    return w, h, 0.0, (canvas_h - h) / 2


def contain_box(canvas_w: int, canvas_h: int, image_w: int, image_h: int) -> Box:
    """Size and offset that fit the whole image inside the canvas."""
    canvas_aspect = canvas_w / canvas_h
    image_aspect = image_w / image_h
    if image_aspect > canvas_aspect:
        w, h = float(canvas_w), canvas_w / image_aspect
        return w, h, 0.0, (canvas_h - h) / 2
    w, h = canvas_h * image_aspect, float(canvas_h)
    return w, h, (canvas_w - w) / 2, 0.0


def average_color(image: Image.Image) -> Tuple[int, int, int]:
    sample = np.asarray(image.convert("RGB").resize((8, 8), Image.BILINEAR), dtype=np.float32)
    r, g, b = sample.reshape(-1, 3).mean(axis=0)
    return int(round(r)), int(round(g)), int(round(b))


class FrameCompositor:
    """Renders RGBA frames of a still image driven by audio energy.

    Usage:
        compositor = FrameCompositor(1080, 1920, Image.open("cover.png"))
        frame_bytes = compositor.render(time=0.5, drive=drive, effects=effects)
    """

    def __init__(self, width: int, height: int, image: Image.Image):
        self.width = width
        self.height = height
        self.image = image.convert("RGBA")
        iw, ih = self.image.size

        self.cover = cover_box(width, height, iw, ih)
        self.contain = contain_box(width, height, iw, ih)
        self.letterbox = height > width
        self.backdrop = average_color(self.image) + (255,)

        if self.letterbox:
            cw, ch, _, _ = self.contain
            blur_size = (
                max(1, round(cw * LETTERBOX_BLUR_SCALE)),
                max(1, round(ch * LETTERBOX_BLUR_SCALE)),
            )
            self._blurred = self.image.resize(blur_size, Image.BILINEAR).filter(
                ImageFilter.GaussianBlur(LETTERBOX_BLUR_RADIUS)
            )

        # Normalised distance from centre, used by the vignette
        cx, cy = width / 2, height / 2
        ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
        self._radius = np.sqrt((xs - cx) ** 2 + (ys - cy) ** 2) / math.sqrt(cx * cx + cy * cy)

    def _paste_scaled(self, canvas: Image.Image, source: Image.Image, box: Box, scale: float) -> None:
        """Paste ``source`` at ``box`` after zooming about the canvas centre."""
        w, h, x, y = box
        cx, cy = self.width / 2, self.height / 2
        sw, sh = max(1, round(w * scale)), max(1, round(h * scale))
        sx = round(cx + (x - cx) * scale)
        sy = round(cy + (y - cy) * scale)
        resized = source.resize((sw, sh), Image.BILINEAR)
        # paste() accepts negative offsets; alpha_composite() does not
        canvas.paste(resized, (sx, sy), resized)

    def _compose(self, scale: float) -> Image.Image:
        canvas = Image.new("RGBA", (self.width, self.height), self.backdrop)
        self._paste_scaled(canvas, self.image, self.cover, scale)

        if self.letterbox:
            shade = Image.new("RGBA", canvas.size, (0, 0, 0, round(255 * LETTERBOX_DIM)))
            canvas.alpha_composite(shade)
            cw, ch, cx, cy = self.contain
            bw, bh = cw * LETTERBOX_BLUR_SCALE, ch * LETTERBOX_BLUR_SCALE
            blur_box = (bw, bh, cx - (bw - cw) / 2, cy - (bh - ch) / 2)
            self._paste_scaled(canvas, self._blurred, blur_box, scale)
            self._paste_scaled(canvas, self.image, self.contain, scale)
        return canvas

    def render(self, time: float, drive: AudioDrive, effects: EffectConfig) -> bytes:
        """Render one frame as raw RGBA bytes (width * height * 4)."""
        low, high = drive.low, drive.high
        scale = 1 + low * effects.breathing.scale + math.sin(time * 0.5) * low * 0.02

        pixels = np.asarray(self._compose(scale), dtype=np.float32)[:, :, :3].copy()

        if high > 0.01:
            offset = round(high * CHROMA_BASE_FACTOR * self.width * effects.chromatic_aberration.intensity)
            if offset >= 1:
                source = pixels.copy()
                pixels[:, :-offset, 0] = source[:, offset:, 0]
                pixels[:, -offset:, 0] = source[:, -1:, 0]
                pixels[:, offset:, 2] = source[:, :-offset, 2]
                pixels[:, :offset, 2] = source[:, :1, 2]

        pixels *= 1 + low * BRIGHTNESS_GAIN
        np.minimum(pixels, 255, out=pixels)

        grain = effects.film_grain.amount
        if grain > 0:
            rng = np.random.default_rng(int(time * 1000) % 10000)
            noise = (rng.random((self.height, self.width), dtype=np.float32) - 0.5) * grain * 255
            pixels += noise[:, :, None]

        strength = effects.vignette.strength - low * VIGNETTE_LOW_RELIEF
        if strength > 0:
            pixels *= (1 - self._radius * strength)[:, :, None]

        rgba = np.empty((self.height, self.width, 4), dtype=np.uint8)
        rgba[:, :, :3] = np.clip(pixels, 0, 255)
        rgba[:, :, 3] = 255
        return rgba.tobytes()
