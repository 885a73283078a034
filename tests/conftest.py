"""Shared fixtures and helpers for fisheye correction tests."""

import numpy as np
import pytest

from fisheye_correction import CorrectingParams, CorrectingType, CorrectingUtil, DistanceMappingType

# Synthetic frame: 300x300 crop with the fisheye disc centered at (150, 150)
SRC_SHAPE = (300, 300, 3)
CENTER = (150, 150)
RADIUS = 100
DST_SHAPE = (150, 300, 3)
DISC_COLOR = (30, 144, 255)

SUPPORTED_TYPES = [t for t in CorrectingType if t != CorrectingType.OPENCV]
REVERSED_TYPES = [t for t in SUPPORTED_TYPES if t.name.endswith('REVERSED')]


def make_disc_image(shape=SRC_SHAPE, center=CENTER, radius=RADIUS, color=DISC_COLOR):
  """Black frame with a solid-colour disc of every pixel within `radius` of `center`."""
  img = np.zeros(shape, dtype=np.uint8)
  rows, cols = np.mgrid[0:shape[0], 0:shape[1]]
  inside = (rows - center[1]) ** 2 + (cols - center[0]) ** 2 <= radius ** 2
  img[inside] = color
  return img


def make_noise_image(shape=SRC_SHAPE, seed=0):
  rng = np.random.default_rng(seed)
  return rng.integers(0, 256, size=shape, dtype=np.uint8)


def make_params(ctype=CorrectingType.LONG_LAT_MAPPING_REVERSED, dm_type=DistanceMappingType.LONG_LAT,
                use_remap=True, **kwargs):
  kwargs.setdefault('center_of_circle', CENTER)
  kwargs.setdefault('radius_of_circle', RADIUS)
  return CorrectingParams(ctype=ctype, dm_type=dm_type, use_remap=use_remap, **kwargs)


@pytest.fixture
def disc_image():
  return make_disc_image()


@pytest.fixture
def cache_dir(tmp_path):
  path = tmp_path / "remap_cache"
  path.mkdir()
  return path


@pytest.fixture
def engine(cache_dir):
  return CorrectingUtil(temp_path=str(cache_dir))
