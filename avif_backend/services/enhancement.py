"""
Enhancement pipeline: ordered post-transcode transforms on an in-memory raster.

The set of stage names is fixed (``EnhancementStage``); the function behind a
stage can be swapped per pipeline instance, e.g. for a model-backed denoiser.
A stage with no implementation, or whose Pillow capability is missing, is
skipped with a warning: enhancement never decides whether a conversion
succeeds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from avif_backend.services import image_store
from avif_backend.services import observability_utils as obs
from avif_backend.services.models import MAX_DIMENSION
from avif_backend.services.results import ErrorKind, Failure

try:
    from PIL import ImageFilter
except Exception:
    ImageFilter = None  # type: ignore

logger = obs.get_logger("avif_backend.services.enhancement")

NOISE_RADIUS = 1
UPSCALE_FACTOR = 2
# [-100, 100] filter scale, negative contrast = stronger contrast
CONTRAST_LEVEL = -10
BRIGHTNESS_LEVEL = 10


class EnhancementStage(str, Enum):
    NOISE_REDUCTION = "noise_reduction"
    SUPER_RESOLUTION = "super_resolution"
    COLOR_ENHANCEMENT = "color_enhancement"


StageFn = Callable[["image_store.Image.Image"], "image_store.Image.Image"]


class StageUnavailable(RuntimeError):
    """Raised by a stage implementation whose backing capability is missing."""


@dataclass
class EnhancementReport:
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def skip(self, stage: EnhancementStage, reason: str) -> None:
        self.skipped.append(stage.value)
        self.warnings.append(f"{stage.value} skipped: {reason}")


def noise_reduction(img):
    """3x3 neighbourhood mean (box blur, radius 1), edges clamped."""
    if ImageFilter is None or not hasattr(ImageFilter, "BoxBlur"):
        raise StageUnavailable("Pillow ImageFilter.BoxBlur unavailable")
    return img.filter(ImageFilter.BoxBlur(NOISE_RADIUS))


def super_resolution(img, max_dimension: int = MAX_DIMENSION):
    if image_store.Image is None:
        raise StageUnavailable("Pillow unavailable")
    width, height = img.size
    new_size = (width * UPSCALE_FACTOR, height * UPSCALE_FACTOR)
    if max(new_size) > max_dimension:
        raise StageUnavailable(f"upscaled size {new_size[0]}x{new_size[1]} exceeds {max_dimension}px")
    return img.resize(new_size, image_store.Image.Resampling.BICUBIC)


def _contrast_brightness_lut(contrast: int, brightness: int) -> List[int]:
    # contrast factor follows the common GD convention: ((100 - c) / 100) ** 2
    factor = ((100.0 - contrast) / 100.0) ** 2
    table = []
    for value in range(256):
        # two separate filter passes, each clamped to 0..255
        v = ((value / 255.0 - 0.5) * factor + 0.5) * 255.0
        v = int(max(0.0, min(255.0, v)))
        table.append(max(0, min(255, v + brightness)))
    return table


def color_enhancement(img):
    if image_store.Image is None:
        raise StageUnavailable("Pillow unavailable")
    source = img if img.mode in ("RGB", "RGBA") else img.convert("RGBA" if "A" in img.getbands() else "RGB")
    lut = _contrast_brightness_lut(CONTRAST_LEVEL, BRIGHTNESS_LEVEL)
    identity = list(range(256))
    table = lut * 3 + (identity if source.mode == "RGBA" else [])
    result = source.point(table)
    if source is not img:
        source.close()
    return result


DEFAULT_STAGES: Dict[EnhancementStage, Optional[StageFn]] = {
    EnhancementStage.NOISE_REDUCTION: noise_reduction,
    EnhancementStage.SUPER_RESOLUTION: super_resolution,
    EnhancementStage.COLOR_ENHANCEMENT: color_enhancement,
}


def parse_stages(names: Iterable[Union[str, EnhancementStage]]) -> Union[List[EnhancementStage], Failure]:
    resolved: List[EnhancementStage] = []
    for name in names:
        try:
            resolved.append(EnhancementStage(name))
        except ValueError:
            return Failure(ErrorKind.UNSUPPORTED_ENHANCEMENT, f"unsupported enhancement type: {name}")
    return resolved


class EnhancementPipeline:
    def __init__(self, implementations: Optional[Mapping[EnhancementStage, Optional[StageFn]]] = None) -> None:
        self._impls: Dict[EnhancementStage, Optional[StageFn]] = dict(DEFAULT_STAGES)
        if implementations:
            self._impls.update(implementations)

    def apply(
        self,
        stages: Sequence[Union[str, EnhancementStage]],
        buffer,
        report: Optional[EnhancementReport] = None,
    ):
        """Run ``stages`` in order; returns the final buffer or a Failure.

        Names are validated before any pixel is touched. The caller's input
        buffer is never closed; intermediate buffers are closed as soon as the
        next stage has produced its output.
        """
        parsed = parse_stages(stages)
        if isinstance(parsed, Failure):
            logger.warning(str(parsed))
            obs.metrics_inc("enhancement.failed.unsupported")
            return parsed

        report = report if report is not None else EnhancementReport()
        current = buffer
        for stage in parsed:
            fn = self._impls.get(stage)
            if fn is None:
                report.skip(stage, "no implementation configured")
                logger.warning(f"Enhancement stage {stage.value} has no implementation; skipping")
                continue
            try:
                produced = fn(current)
            except StageUnavailable as e:
                report.skip(stage, str(e))
                logger.warning(f"Enhancement stage {stage.value} skipped: {e}")
                obs.metrics_inc(f"enhancement.skipped.{stage.value}")
                continue
            except Exception as e:
                report.skip(stage, f"error: {e}")
                logger.exception(f"Enhancement stage {stage.value} raised; skipping")
                obs.metrics_inc(f"enhancement.skipped.{stage.value}")
                continue

            if produced is not current and current is not buffer:
                current.close()
            current = produced
            report.applied.append(stage.value)
            obs.metrics_inc(f"enhancement.applied.{stage.value}")
        return current


__all__ = [
    "EnhancementStage",
    "EnhancementPipeline",
    "EnhancementReport",
    "StageUnavailable",
    "parse_stages",
    "noise_reduction",
    "super_resolution",
    "color_enhancement",
]
