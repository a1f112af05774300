"""
Pytest configuration and fixtures for nftimg.

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

import numpy as np
import pytest
from PIL import Image

from nftimg import ColorSpace, ImageBuffer, NFTStylizer

IMAGE_WIDTH = 64
IMAGE_HEIGHT = 48


def make_scene(width: int = IMAGE_WIDTH, height: int = IMAGE_HEIGHT) -> np.ndarray:
    """RGB test scene: a horizontal gradient with two flat shapes on top."""
    scene = np.zeros((height, width, 3), dtype=np.uint8)
    scene[..., 0] = np.linspace(30, 220, width, dtype=np.uint8)[None, :]
    scene[..., 1] = np.linspace(200, 60, height, dtype=np.uint8)[:, None]
    scene[..., 2] = 120

    scene[8:24, 10:30] = (230, 40, 40)
    yy, xx = np.mgrid[:height, :width]
    circle = (yy - 30) ** 2 + (xx - 44) ** 2 < 10**2
    scene[circle] = (20, 30, 160)
    return scene


@pytest.fixture
def scene_rgb():
    return make_scene()


@pytest.fixture
def bgr_buffer(scene_rgb):
    """The test scene as a BGR buffer."""
    return ImageBuffer(np.ascontiguousarray(scene_rgb[..., ::-1]), ColorSpace.BGR)


@pytest.fixture
def png_image(tmp_path, scene_rgb):
    """Path to the test scene saved as PNG."""
    path = tmp_path / "photo.png"
    Image.fromarray(scene_rgb).save(path)
    return path


@pytest.fixture
def jpg_image(tmp_path, scene_rgb):
    """Path to the test scene saved as JPEG."""
    path = tmp_path / "photo.jpg"
    Image.fromarray(scene_rgb).save(path, quality=95)
    return path


@pytest.fixture
def bmp_image(tmp_path, scene_rgb):
    """Path to the test scene saved as BMP."""
    path = tmp_path / "photo.bmp"
    Image.fromarray(scene_rgb).save(path)
    return path


@pytest.fixture
def stylizer():
    return NFTStylizer()
