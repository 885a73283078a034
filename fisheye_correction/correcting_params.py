"""
MIT License

Copyright (c) 2025 Pan Yu

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.

Author: Pan Yu
"""

import math
import os
from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple, Union

import yaml


class ConfigurationError(ValueError):
  """Raised when a correction cannot be configured from the given parameters."""


class CorrectingType(IntEnum):
  """
  Projection family and direction used by the correcting engine.

  The integer values are part of the configuration hash, so the declaration
  order must not change.
  """
  BASIC_FORWARD = 0
  BASIC_REVERSED = 1
  LONG_LAT_MAPPING_FORWARD = 2
  LONG_LAT_MAPPING_REVERSED = 3
  PERSPECTIVE_LONG_LAT_MAPPING_CAM_LENS_MOD_FORWARD = 4
  PERSPECTIVE_LONG_LAT_MAPPING_CAM_LENS_MOD_REVERSED = 5
  LONG_LAT_MAPPING_CAM_LENS_MOD_UNFIXED_FORWARD = 6
  LONG_LAT_MAPPING_CAM_LENS_MOD_UNFIXED_REVERSED = 7
  OPENCV = 8


class DistanceMappingType(IntEnum):
  """Law turning a normalized disc radius into an angle from the optical axis."""
  LONG_LAT = 0
  PERSPECTIVE = 1


UNFIXED_TYPES = (
  CorrectingType.LONG_LAT_MAPPING_CAM_LENS_MOD_UNFIXED_FORWARD,
  CorrectingType.LONG_LAT_MAPPING_CAM_LENS_MOD_UNFIXED_REVERSED,
)

HASH_SEED = 0x9e3779b9
HASH_MASK = 0xFFFFFFFF
W_PRECISION = 10000


def _coerce_enum(enum_cls, value):
  """Accept an enum member, its integer value or its (case-insensitive) name."""
  if isinstance(value, enum_cls):
    return value
  try:
    if isinstance(value, str):
      return enum_cls[value.strip().upper()]
    if isinstance(value, bool):
      raise ValueError(value)
    return enum_cls(int(value))
  except (KeyError, ValueError, TypeError):
    names = ", ".join(member.name for member in enum_cls)
    raise ConfigurationError(f"Unsupported {enum_cls.__name__} value {value!r} (expected one of: {names})")


def _round_half_away(value: float) -> int:
  """Round like C's round(): halves go away from zero."""
  return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _mix(seed: int, field: int) -> int:
  return (seed + HASH_SEED + (field << 6) + (field >> 2)) & HASH_MASK


@dataclass(frozen=True, eq=False)
class CorrectingParams:
  """
  Immutable description of one fisheye correction configuration.

  The object doubles as the key of the remap cache: equality and hashing
  ignore the free angle pair `w` unless `ctype` is one of the "unfixed"
  lens model variants, where it defines the output field of view.

  Fields:
  - ctype: projection family and direction (CorrectingType)
  - center_of_circle: (x, y) pixel position of the fisheye disc center
  - radius_of_circle: radius of the fisheye disc in pixels
  - dm_type: radial-to-angular distance mapping law (DistanceMappingType)
  - w: (horizontal, vertical) field angles in radians for the unfixed variants
  - use_remap: whether the persisted remap cache may be used
  """
  ctype: CorrectingType = CorrectingType.BASIC_REVERSED
  center_of_circle: Tuple[int, int] = (0, 0)
  radius_of_circle: int = 0
  dm_type: DistanceMappingType = DistanceMappingType.LONG_LAT
  w: Tuple[float, float] = (2 * math.pi, math.pi / 2)
  use_remap: bool = True

  def __post_init__(self):
    try:
      center = tuple(int(c) for c in self.center_of_circle)
      w = tuple(float(a) for a in self.w)
      radius = int(self.radius_of_circle)
    except (TypeError, ValueError) as e:
      raise ConfigurationError(f"Invalid correcting parameters: {e}")
    if len(center) != 2 or len(w) != 2:
      raise ConfigurationError(f"center_of_circle and w must be pairs: center={center}, w={w}")
    if not all(math.isfinite(a) for a in w):
      raise ConfigurationError(f"Field angles must be finite: w={w}")

    # Frozen dataclass: normalized values go through object.__setattr__
    object.__setattr__(self, 'ctype', _coerce_enum(CorrectingType, self.ctype))
    object.__setattr__(self, 'dm_type', _coerce_enum(DistanceMappingType, self.dm_type))
    object.__setattr__(self, 'center_of_circle', center)
    object.__setattr__(self, 'radius_of_circle', radius)
    object.__setattr__(self, 'w', w)
    object.__setattr__(self, 'use_remap', bool(self.use_remap))

  @property
  def is_unfixed(self) -> bool:
    """True for the lens model variants whose field angles come from `w`."""
    return self.ctype in UNFIXED_TYPES

  def _rounded_w(self) -> Tuple[int, int]:
    return (_round_half_away(self.w[0] * W_PRECISION), _round_half_away(self.w[1] * W_PRECISION))

  def __eq__(self, other):
    if not isinstance(other, CorrectingParams):
      return NotImplemented
    same_base = (self.ctype == other.ctype
                 and self.center_of_circle == other.center_of_circle
                 and self.radius_of_circle == other.radius_of_circle
                 and self.dm_type == other.dm_type
                 and self.use_remap == other.use_remap)
    if not same_base:
      return False
    if self.is_unfixed:
      return self._rounded_w() == other._rounded_w()
    return True

  def config_hash(self) -> int:
    """
    Deterministic 32-bit fingerprint of the configuration.

    Golden-ratio additive mixing over ctype, center, radius and dm_type, plus
    the free angle pair (in 1e-4 rad steps) for both unfixed variants.
    The value is unsigned and stable across processes.
    """
    ret = int(self.ctype)
    ret = _mix(ret, self.center_of_circle[0])
    ret = _mix(ret, self.center_of_circle[1])
    ret = _mix(ret, self.radius_of_circle)
    ret = _mix(ret, int(self.dm_type))
    if self.is_unfixed:
      wx, wy = self._rounded_w()
      ret = _mix(ret, wx)
      ret = _mix(ret, wy)
    return ret

  def __hash__(self):
    return self.config_hash()

  def validate(self, image_shape=None):
    """
    Validate the configuration, optionally against a source raster shape.

    Parameters:
    - image_shape: shape of the source raster, (rows, cols[, channels])

    Raises:
    ConfigurationError if the configuration cannot be corrected.
    """
    if self.ctype == CorrectingType.OPENCV:
      raise ConfigurationError("CorrectingType.OPENCV is handled by an external library, not by this engine")

    if self.radius_of_circle <= 0:
      raise ConfigurationError(f"Invalid circle radius: {self.radius_of_circle}")

    if self.is_unfixed:
      wx, wy = self.w
      tolerance = 1.0 / W_PRECISION
      if not (0 < wx <= 2 * math.pi + tolerance) or not (0 < wy <= math.pi + tolerance):
        raise ConfigurationError(f"Free field angles out of range (0, 2pi] x (0, pi]: w={self.w}")

    if image_shape is not None:
      rows, cols = image_shape[:2]
      cx, cy = self.center_of_circle
      if not (0 <= cx < cols) or not (0 <= cy < rows):
        raise ConfigurationError(f"Circle center outside image bounds: center=({cx}, {cy}), image={cols}x{rows}")

  def to_dict(self):
    """
    Convert parameters to a plain dictionary, the same layout the YAML loader reads.
    """
    return {
      'correcting_type': self.ctype.name,
      'center_of_circle': list(self.center_of_circle),
      'radius_of_circle': self.radius_of_circle,
      'distance_mapping_type': self.dm_type.name,
      'w': list(self.w),
      'use_remap': self.use_remap
    }

  def __str__(self):
    return (f"CorrectingParams(type={self.ctype.name}, "
            f"center=({self.center_of_circle[0]}, {self.center_of_circle[1]}), "
            f"radius={self.radius_of_circle}, dm={self.dm_type.name}, "
            f"w=({self.w[0]:.4f}, {self.w[1]:.4f}), use_remap={self.use_remap})")

  def __repr__(self):
    return self.__str__()


def parse_correcting_params(filename: Union[str, os.PathLike]) -> CorrectingParams:
  """
  Parse correcting parameters from a YAML file and return a CorrectingParams object.

  Expected YAML format:

    correcting_type: PERSPECTIVE_LONG_LAT_MAPPING_CAM_LENS_MOD_REVERSED
    center_of_circle: [540, 540]
    radius_of_circle: 540
    distance_mapping_type: LONG_LAT
    w: [6.2832, 1.5708]       # optional, radians
    use_remap: true           # optional

  Parameters:
  - filename: path to YAML parameters file

  Returns:
  CorrectingParams object with loaded parameters.

  Raises:
  ConfigurationError if file format is invalid or parameters are missing.
  FileNotFoundError if the file doesn't exist.
  """
  try:
    with open(filename, 'r') as f:
      data = yaml.safe_load(f)
  except FileNotFoundError:
    raise FileNotFoundError(f"Correcting parameters file not found: {filename}")
  except yaml.YAMLError as e:
    raise ConfigurationError(f"Invalid YAML format in file '{filename}': {e}")

  if not isinstance(data, dict):
    raise ConfigurationError(f"Correcting parameters file '{filename}' must contain a mapping")

  try:
    kwargs = {
      'ctype': data['correcting_type'],
      'center_of_circle': data['center_of_circle'],
      'radius_of_circle': data['radius_of_circle'],
      'dm_type': data.get('distance_mapping_type', DistanceMappingType.LONG_LAT),
      'use_remap': data.get('use_remap', True)
    }
    if 'w' in data:
      kwargs['w'] = data['w']
  except KeyError as e:
    raise ConfigurationError(f"Missing required parameter in YAML file: {e}")

  params = CorrectingParams(**kwargs)
  params.validate()
  return params


def parse_correcting_params_dict(filename):
  """
  Parse correcting parameters from file and return dictionary format.

  Parameters:
  - filename: path to correcting parameters file

  Returns:
  Dictionary containing correcting parameters.
  """
  return parse_correcting_params(filename).to_dict()
