#!/usr/bin/env python3

"""
nftimg - Poster-Style Image Stylization

Copyright (C) 2025 The nftimg Authors

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program. If not, see <https://www.gnu.org/licenses/>.
"""
import argparse
import enum
import functools
import logging
import sys
import time

from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps


# Marker inserted into the output file name, before the first dot
OUTPUT_MARKER = ".nft"

# Mean-shift color segmentation (base layer)
MEAN_SHIFT_SPATIAL_RADIUS = 10.0
MEAN_SHIFT_COLOR_RADIUS = 20.0
MEAN_SHIFT_MAX_LEVEL = 1

# Anisotropic diffusion (edge layer smoothing)
DIFFUSION_TIME_STEP = 0.05
DIFFUSION_CONDUCTANCE = 0.1
DIFFUSION_ITERATIONS = 10

# Adaptive threshold on the lightness channel
THRESHOLD_MAX_VALUE = 255
THRESHOLD_BLOCK_SIZE = 9
THRESHOLD_OFFSET = 9.0

# Edge dilation
DILATE_KERNEL_SIZE = 3
DILATE_ITERATIONS = 1

DEFAULT_QUALITY = 95


logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(message)s")


def log_method(log_time: bool = False):
    """
    Decorator to log start and end of a method call.
    If log_time=True, it also logs duration.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            logger.info(f"Starting '{func.__name__}'...")
            start = time.time() if log_time else None
            result = func(self, *args, **kwargs)
            if log_time:
                duration = time.time() - start
                logger.info(f"Finished '{func.__name__}' in {duration:.2f} seconds.")
            else:
                logger.info(f"Finished '{func.__name__}'.")
            return result

        return wrapper

    return decorator


def log_step(msg_or_func):
    """
    Decorator factory to log a custom message around a single pipeline stage.
    The message may be a callable taking the instance, so it can report parameters.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            msg = msg_or_func(self) if callable(msg_or_func) else msg_or_func
            logger.info(f"Starting: {msg}")
            result = func(self, *args, **kwargs)
            logger.info(f"Finished: {msg}")
            return result

        return wrapper

    return decorator


class ColorSpace(enum.Enum):
    BGR = "BGR"
    LAB = "Lab"
    GRAY = "gray"


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    """
    An 8-bit image tagged with the color space its samples are expressed in.
    BGR and Lab buffers have three channels, gray buffers (lightness planes and masks) have none.
    """

    pixels: np.ndarray
    space: ColorSpace

    def __post_init__(self) -> None:
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 samples, got {self.pixels.dtype}")

        expected_ndim = 2 if self.space is ColorSpace.GRAY else 3
        if self.pixels.ndim != expected_ndim or (
            expected_ndim == 3 and self.pixels.shape[2] != 3
        ):
            raise ValueError(
                f"{self.space.value} buffer must have shape "
                f"{'(H, W)' if expected_ndim == 2 else '(H, W, 3)'}, got {self.pixels.shape}"
            )

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else self.pixels.shape[2]

    def require(self, space: ColorSpace) -> "ImageBuffer":
        if self.space is not space:
            raise ValueError(
                f"Expected a {space.value} buffer, got {self.space.value}"
            )
        return self


def output_path_for(input_path: Path | str) -> Path:
    """
    Derives the output location from the input: same directory, with the marker
    inserted before the first dot of the file name (photo.jpg -> photo.nft.jpg).
    Only the first dot is used, so a.b.jpg becomes a.nft.b.jpg.
    """
    path = Path(input_path)
    if "." not in path.name:
        raise ValueError(
            f"Cannot derive output name for '{path}': file name has no extension"
        )
    return path.with_name(path.name.replace(".", f"{OUTPUT_MARKER}.", 1))


class NFTStylizer:
    def __init__(
        self,
        spatial_radius: float = MEAN_SHIFT_SPATIAL_RADIUS,
        color_radius: float = MEAN_SHIFT_COLOR_RADIUS,
        max_pyramid_level: int = MEAN_SHIFT_MAX_LEVEL,
        time_step: float = DIFFUSION_TIME_STEP,
        conductance: float = DIFFUSION_CONDUCTANCE,
        diffusion_iterations: int = DIFFUSION_ITERATIONS,
        block_size: int = THRESHOLD_BLOCK_SIZE,
        threshold_offset: float = THRESHOLD_OFFSET,
        kernel_size: int = DILATE_KERNEL_SIZE,
        dilate_iterations: int = DILATE_ITERATIONS,
        keep_stages: bool = False,
    ) -> None:
        if spatial_radius <= 0 or color_radius <= 0:
            raise ValueError("Mean-shift radii must be positive.")

        if max_pyramid_level < 0:
            raise ValueError("max_pyramid_level must be non-negative")

        if time_step <= 0 or conductance <= 0:
            raise ValueError("time_step and conductance must be positive")

        if diffusion_iterations < 1:
            raise ValueError("diffusion_iterations must be at least 1")

        if block_size < 3 or block_size % 2 == 0:
            raise ValueError("block_size must be an odd number >= 3")

        if kernel_size < 1:
            raise ValueError("kernel_size must be at least 1")

        if dilate_iterations < 0:
            raise ValueError("dilate_iterations must be non-negative")

        self.spatial_radius = spatial_radius
        self.color_radius = color_radius
        self.max_pyramid_level = max_pyramid_level
        self.time_step = time_step
        self.conductance = conductance
        self.diffusion_iterations = diffusion_iterations
        self.block_size = block_size
        self.threshold_offset = threshold_offset
        self.kernel_size = kernel_size
        self.dilate_iterations = dilate_iterations
        self.keep_stages = keep_stages
        self.stages: List[Tuple[str, ImageBuffer]] = []

    @log_method(log_time=True)
    def stylize(
        self,
        input_path: Path | str,
        output_path: Path | str | None = None,
        quality: int = DEFAULT_QUALITY,
    ) -> Path:
        """
        This is the main user-facing method. It loads the image, runs it through the stylization
        pipeline and writes the result, by default next to the input with the marker in its name.

        The output path is derived before any work is done and the file is written last,
        so a failure at any stage leaves nothing behind.
        """
        output_path = Path(output_path) if output_path else output_path_for(input_path)

        image = self.load_image(input_path)
        stylized = self.process(image)
        self.save_image(stylized, output_path, quality)
        return output_path

    @log_method(log_time=True)
    def process(self, image: ImageBuffer) -> ImageBuffer:
        """Poster rendering of a BGR image

        The image is converted to Lab once and feeds two branches. The base branch flattens colors
        with mean-shift filtering and converts back to BGR. The edge branch smooths the Lab image
        with anisotropic diffusion, thresholds its lightness plane against the local mean and thickens
        the result by dilation. The edge mask then blacks out the base wherever it is zero.
        """
        self.stages = []
        lab = self.to_perceptual_color_space(image)

        base = self.to_display_color_space(self.segment_colors(lab))
        self._record("segmented", base)

        blurred = self.smooth_edges(lab)
        self._record("blurred", blurred)
        lightness = self.lightness_channel(blurred)
        self._record("lightness", lightness)
        edges = self.extract_edges(lightness)
        self._record("edges", edges)

        output = self.combine_base_and_edge(base, edges)
        self._record("output", output)
        return output

    # Image I/O
    def load_image(self, source: Path | Image.Image | str) -> ImageBuffer:
        """
        Reads an image from the given file source and returns it as an 8-bit BGR buffer.
        EXIF orientation is applied before the conversion, so the buffer matches what viewers display.
        It raises errors if the file is missing or cannot be decoded,
        ensuring the rest of the pipeline starts with a valid image.
        """
        if isinstance(source, Image.Image):
            rgb = self._to_rgb(source)
            return ImageBuffer(cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR), ColorSpace.BGR)

        source = Path(source)
        if not source.exists():
            raise FileNotFoundError(f"File not found: {source}")

        try:
            with Image.open(source) as img:
                rgb = self._to_rgb(img)
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to load image from {source}: {e}") from e

        logger.info(f"Loaded image: {source} ({rgb.shape[1]}x{rgb.shape[0]})")
        return ImageBuffer(cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR), ColorSpace.BGR)

    def _to_rgb(self, img: Image.Image) -> np.ndarray:
        """
        Applies EXIF orientation and converts to 8-bit RGB.
        Pillow clips 16-bit integer samples when converting, so those are scaled down to 8 bits first.
        """
        img = ImageOps.exif_transpose(img)
        if img.mode == "I" or img.mode.startswith("I;16"):
            samples = np.clip(np.array(img, dtype=np.int64) >> 8, 0, 255)
            img = Image.fromarray(samples.astype(np.uint8))
        return np.array(img.convert("RGB"))

    def save_image(
        self, image: ImageBuffer, path: Path | str, quality: int = DEFAULT_QUALITY
    ) -> None:
        """
        Reorders a BGR buffer to RGB and saves it with Pillow, which picks the format from the extension.
        Quality parameter controls compression for lossy formats like JPEG.
        """
        if image.space is ColorSpace.GRAY:
            rgb = image.pixels
        else:
            rgb = cv2.cvtColor(image.require(ColorSpace.BGR).pixels, cv2.COLOR_BGR2RGB)

        try:
            Image.fromarray(rgb).save(path, quality=quality)
        except (KeyError, ValueError) as e:
            raise ValueError(f"Unsupported output format for {path}: {e}") from e
        logger.info(f"Saved image: {path}")

    def save_stages(self, directory: Path | str) -> List[Path]:
        """
        Writes every intermediate buffer recorded by the last process() call as a numbered PNG.
        Lab stages are converted to BGR first so they can be viewed.
        """
        if not isinstance(directory, Path):
            directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        written = []
        for i, (name, stage) in enumerate(self.stages, start=1):
            if stage.space is ColorSpace.LAB:
                stage = self.to_display_color_space(stage)
            path = directory / f"{i}_{name}.png"
            self.save_image(stage, path)
            written.append(path)

        logger.info(f"Saved {len(written)} pipeline stages to '{directory}'")
        return written

    def _record(self, name: str, image: ImageBuffer) -> None:
        if self.keep_stages:
            self.stages.append((name, image))

    # Color space conversion
    def to_perceptual_color_space(self, image: ImageBuffer) -> ImageBuffer:
        lab = cv2.cvtColor(image.require(ColorSpace.BGR).pixels, cv2.COLOR_BGR2Lab)
        return ImageBuffer(lab, ColorSpace.LAB)

    def to_display_color_space(self, image: ImageBuffer) -> ImageBuffer:
        bgr = cv2.cvtColor(image.require(ColorSpace.LAB).pixels, cv2.COLOR_Lab2BGR)
        return ImageBuffer(bgr, ColorSpace.BGR)

    # Base branch
    @log_step(
        lambda self: f"Mean-shift color segmentation (spatial radius {self.spatial_radius}, "
        f"color radius {self.color_radius})..."
    )
    def segment_colors(self, image: ImageBuffer) -> ImageBuffer:
        """
        Runs OpenCV's pyramid mean-shift filtering in Lab space. Every pixel is moved towards the
        density mode of its joint spatial and color neighbourhood, which flattens regions into uniform
        colors while keeping the boundaries between them sharp.
        The library's default termination criteria are used.
        """
        segmented = cv2.pyrMeanShiftFiltering(
            image.require(ColorSpace.LAB).pixels,
            sp=self.spatial_radius,
            sr=self.color_radius,
            maxLevel=self.max_pyramid_level,
        )
        return ImageBuffer(segmented, ColorSpace.LAB)

    # Edge branch
    @log_step(
        lambda self: f"Anisotropic diffusion ({self.diffusion_iterations} iterations)..."
    )
    def smooth_edges(self, image: ImageBuffer) -> ImageBuffer:
        """
        Perona-Malik diffusion from the ximgproc contrib module. Flat areas are blurred while
        diffusion across strong gradients is suppressed, the opposite bias of a Gaussian blur.
        """
        smoothed = cv2.ximgproc.anisotropicDiffusion(
            image.require(ColorSpace.LAB).pixels,
            self.time_step,
            self.conductance,
            self.diffusion_iterations,
        )
        return ImageBuffer(smoothed, ColorSpace.LAB)

    def lightness_channel(self, image: ImageBuffer) -> ImageBuffer:
        lightness = cv2.split(image.require(ColorSpace.LAB).pixels)[0]
        return ImageBuffer(lightness, ColorSpace.GRAY)

    @log_step("Extracting edges (adaptive threshold and dilation)...")
    def extract_edges(self, image: ImageBuffer) -> ImageBuffer:
        """
        Binarizes the lightness plane against the mean of each pixel's block_size neighbourhood,
        then dilates the white regions with a rectangular kernel. Mirrored borders keep the image edges
        from being treated as dark. The result only contains 0 and 255.
        """
        edges = cv2.adaptiveThreshold(
            image.require(ColorSpace.GRAY).pixels,
            THRESHOLD_MAX_VALUE,
            cv2.ADAPTIVE_THRESH_MEAN_C,
            cv2.THRESH_BINARY,
            self.block_size,
            self.threshold_offset,
        )

        kernel = cv2.getStructuringElement(
            cv2.MORPH_RECT, (self.kernel_size, self.kernel_size)
        )
        dilated = cv2.dilate(
            edges,
            kernel,
            anchor=(-1, -1),
            iterations=self.dilate_iterations,
            borderType=cv2.BORDER_REFLECT,
        )
        return ImageBuffer(dilated, ColorSpace.GRAY)

    # Composition
    @log_step("Combining base and edge layers...")
    def combine_base_and_edge(
        self, base: ImageBuffer, edges: ImageBuffer
    ) -> ImageBuffer:
        """
        Keeps the base color wherever the mask is set and turns everything else black.
        """
        base.require(ColorSpace.BGR)
        edges.require(ColorSpace.GRAY)
        if (base.height, base.width) != (edges.height, edges.width):
            raise ValueError(
                f"Mask size {edges.width}x{edges.height} does not match "
                f"base size {base.width}x{base.height}"
            )

        combined = cv2.bitwise_and(base.pixels, base.pixels, mask=edges.pixels)
        return ImageBuffer(combined, ColorSpace.BGR)


def stylize(
    input_path: Path | str,
    output_path: Path | str | None = None,
    *,
    spatial_radius: float = MEAN_SHIFT_SPATIAL_RADIUS,
    color_radius: float = MEAN_SHIFT_COLOR_RADIUS,
    max_pyramid_level: int = MEAN_SHIFT_MAX_LEVEL,
    time_step: float = DIFFUSION_TIME_STEP,
    conductance: float = DIFFUSION_CONDUCTANCE,
    diffusion_iterations: int = DIFFUSION_ITERATIONS,
    block_size: int = THRESHOLD_BLOCK_SIZE,
    threshold_offset: float = THRESHOLD_OFFSET,
    kernel_size: int = DILATE_KERNEL_SIZE,
    dilate_iterations: int = DILATE_ITERATIONS,
    quality: int = DEFAULT_QUALITY,
    stage_dir: Path | str | None = None,
) -> Path:
    """
    Run the stylization pipeline on an image file and return the path written.
    """
    stylizer = NFTStylizer(
        spatial_radius=spatial_radius,
        color_radius=color_radius,
        max_pyramid_level=max_pyramid_level,
        time_step=time_step,
        conductance=conductance,
        diffusion_iterations=diffusion_iterations,
        block_size=block_size,
        threshold_offset=threshold_offset,
        kernel_size=kernel_size,
        dilate_iterations=dilate_iterations,
        keep_stages=stage_dir is not None,
    )

    written = stylizer.stylize(input_path, output_path, quality=quality)

    if stage_dir is not None:
        stylizer.save_stages(stage_dir)

    return written


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nftimg",
        description="nftimg - Poster-Style Image Stylization",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "images",
        nargs="*",
        metavar="IMAGE",
        help="Input image path; exactly one is processed, "
        "the result is written next to it as <name>.nft.<ext>",
    )

    parser.add_argument(
        "--spatial-radius",
        type=float,
        default=MEAN_SHIFT_SPATIAL_RADIUS,
        help="Mean-shift spatial window radius",
    )
    parser.add_argument(
        "--color-radius",
        type=float,
        default=MEAN_SHIFT_COLOR_RADIUS,
        help="Mean-shift color window radius",
    )
    parser.add_argument(
        "--max-level",
        type=int,
        default=MEAN_SHIFT_MAX_LEVEL,
        help="Mean-shift maximum pyramid level",
    )
    parser.add_argument(
        "--time-step",
        type=float,
        default=DIFFUSION_TIME_STEP,
        help="Anisotropic diffusion time step",
    )
    parser.add_argument(
        "--conductance",
        type=float,
        default=DIFFUSION_CONDUCTANCE,
        help="Anisotropic diffusion conductance",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=DIFFUSION_ITERATIONS,
        help="Anisotropic diffusion iterations",
    )
    parser.add_argument(
        "--block-size",
        type=int,
        default=THRESHOLD_BLOCK_SIZE,
        help="Adaptive threshold neighbourhood size (odd)",
    )
    parser.add_argument(
        "--offset",
        type=float,
        default=THRESHOLD_OFFSET,
        help="Constant subtracted from the local mean when thresholding",
    )
    parser.add_argument(
        "--kernel-size",
        type=int,
        default=DILATE_KERNEL_SIZE,
        help="Dilation kernel size",
    )
    parser.add_argument(
        "--dilate-iterations",
        type=int,
        default=DILATE_ITERATIONS,
        help="Dilation iterations",
    )
    parser.add_argument(
        "--quality",
        type=int,
        default=DEFAULT_QUALITY,
        help="JPEG quality (if saving JPEG)",
    )
    parser.add_argument(
        "--stages-dir", help="Directory to dump intermediate pipeline stages into"
    )

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = create_parser()
    args, unknown = parser.parse_known_args(argv)

    # Unrecognized tokens count as extra arguments, so they make the run a no-op too
    # TODO: decide whether a wrong argument count should become a usage error with exit status 2
    if len(args.images) != 1 or unknown:
        logger.warning(parser.format_usage().strip())
        return 0

    image_path = args.images[0]
    print(f"image={image_path}")

    try:
        stylize(
            image_path,
            spatial_radius=args.spatial_radius,
            color_radius=args.color_radius,
            max_pyramid_level=args.max_level,
            time_step=args.time_step,
            conductance=args.conductance,
            diffusion_iterations=args.iterations,
            block_size=args.block_size,
            threshold_offset=args.offset,
            kernel_size=args.kernel_size,
            dilate_iterations=args.dilate_iterations,
            quality=args.quality,
            stage_dir=args.stages_dir,
        )
    except (OSError, ValueError, cv2.error) as e:
        logger.error(f"Error processing {image_path}: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
