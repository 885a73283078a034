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

from enum import Enum
from typing import Dict, Tuple, Type

import numpy as np

from .correcting_params import ConfigurationError, CorrectingParams, CorrectingType, DistanceMappingType

HALF_PI = np.pi / 2

# Slack for points that land on the disc rim or the destination border
BOUNDARY_TOLERANCE = 1e-9
POLE_EPSILON = 1e-12

# Camera lens model used by the perspective long-lat family
CAM_FIELD_ANGLE = np.pi / 2


class Direction(Enum):
  """Which way a correcting type drives the per-pixel loop."""
  FORWARD = 'forward'   # iterate source pixels, scatter into the destination
  REVERSE = 'reverse'   # iterate destination pixels, sample the source


def _clip_unit(value):
  return np.clip(value, -1.0, 1.0)


def _safe_divide(numerator, denominator):
  """Element-wise division that yields 0 where the denominator vanishes."""
  numerator, denominator = np.broadcast_arrays(np.asarray(numerator, dtype=np.float64),
                                               np.asarray(denominator, dtype=np.float64))
  out = np.zeros(numerator.shape, dtype=np.float64)
  np.divide(numerator, denominator, out=out, where=np.abs(denominator) > POLE_EPSILON)
  return out


def latitude_from_v(v, field_angle=np.pi):
  """
  Convert a normalized vertical coordinate into a latitude angle.

  Parameters:
  - v: vertical coordinate in [-1, 1], +1 at the top of the destination
  - field_angle: latitude span covered by v in radians

  Returns:
  - latitude in radians, positive above the equator
  """
  return np.asarray(v, dtype=np.float64) * (field_angle / 2.0)


def lonlat_to_sphere(longitude, latitude):
  """Unit sphere point (X right, Y up, Z along the optical axis)."""
  cos_lat = np.cos(latitude)
  return cos_lat * np.sin(longitude), np.sin(latitude), cos_lat * np.cos(longitude)


class CoordinateTransform:
  """
  Base class for the fisheye coordinate transform families.

  A transform converts between integer/fractional pixel positions of the
  fisheye source raster and of the corrected destination raster.
  `forward` goes source -> destination, `reverse` goes destination -> source.
  Both accept scalars or arrays (row, col) and return (row, col, valid);
  positions outside the disc or the destination domain are flagged invalid
  and carry the coordinate -1 instead of NaN.

  Subclasses implement the two normalized mappings `_plane_to_disc` and
  `_disc_to_plane` between the destination plane x, y in [-1, 1] and the
  unit disc u, v (v pointing up).
  """

  def __init__(self, params: CorrectingParams, dst_shape: Tuple[int, ...]):
    """
    Initialize the transform from a parameter descriptor.

    Parameters:
    - params: CorrectingParams describing the fisheye disc and mapping law
    - dst_shape: shape of the destination raster, (rows, cols[, channels])
    """
    self.params = params
    self.dst_height, self.dst_width = int(dst_shape[0]), int(dst_shape[1])
    self.cx, self.cy = params.center_of_circle
    self.radius = float(params.radius_of_circle)
    self.dm_type = params.dm_type

    if self.radius <= 0:
      raise ConfigurationError(f"Invalid circle radius: {params.radius_of_circle}")
    if self.dst_height <= 0 or self.dst_width <= 0:
      raise ConfigurationError(f"Invalid destination size: {self.dst_width}x{self.dst_height}")

  # Radial-to-angular law

  def theta_from_rho(self, rho):
    """Angle from the optical axis for a normalized disc radius (rim = pi/2)."""
    if self.dm_type == DistanceMappingType.PERSPECTIVE:
      return 2.0 * np.arctan(rho)
    return rho * HALF_PI

  def rho_from_theta(self, theta):
    if self.dm_type == DistanceMappingType.PERSPECTIVE:
      return np.tan(theta / 2.0)
    return theta / HALF_PI

  def disc_to_sphere(self, u, v):
    rho = np.hypot(u, v)
    theta = self.theta_from_rho(rho)
    # atan2(0, 0) is 0, so the disc center needs no special case
    alpha = np.arctan2(v, u)
    sin_theta = np.sin(theta)
    return sin_theta * np.cos(alpha), sin_theta * np.sin(alpha), np.cos(theta)

  def sphere_to_disc(self, x_s, y_s, z_s):
    theta = np.arctan2(np.hypot(x_s, y_s), z_s)
    alpha = np.arctan2(y_s, x_s)
    rho = self.rho_from_theta(theta)
    return rho * np.cos(alpha), rho * np.sin(alpha)

  # Pixel <-> normalized coordinates

  def _source_to_disc(self, rows, cols):
    return (cols - self.cx) / self.radius, (self.cy - rows) / self.radius

  def _disc_to_source(self, u, v):
    return self.cy - v * self.radius, self.cx + u * self.radius

  def _destination_to_plane(self, rows, cols):
    return (2.0 * cols + 1.0) / self.dst_width - 1.0, 1.0 - (2.0 * rows + 1.0) / self.dst_height

  def _plane_to_destination(self, x, y):
    return ((1.0 - y) * self.dst_height - 1.0) / 2.0, ((x + 1.0) * self.dst_width - 1.0) / 2.0

  # Public mapping

  def forward(self, rows, cols):
    """
    Map source pixel positions to destination pixel positions.

    Parameters:
    - rows, cols: source positions (scalars or arrays)

    Returns:
    - dst_rows, dst_cols, valid
    """
    rows = np.asarray(rows, dtype=np.float64)
    cols = np.asarray(cols, dtype=np.float64)
    u, v = self._source_to_disc(rows, cols)
    inside = np.hypot(u, v) <= 1.0 + BOUNDARY_TOLERANCE

    x, y, valid = self._disc_to_plane(u, v)
    limit = 1.0 + BOUNDARY_TOLERANCE
    valid = valid & inside & (np.abs(x) <= limit) & (np.abs(y) <= limit)

    dst_rows, dst_cols = self._plane_to_destination(x, y)
    return np.where(valid, dst_rows, -1.0), np.where(valid, dst_cols, -1.0), valid

  def reverse(self, rows, cols):
    """
    Map destination pixel positions back to source pixel positions.

    Parameters:
    - rows, cols: destination positions (scalars or arrays)

    Returns:
    - src_rows, src_cols, valid
    """
    rows = np.asarray(rows, dtype=np.float64)
    cols = np.asarray(cols, dtype=np.float64)
    x, y = self._destination_to_plane(rows, cols)

    u, v, valid = self._plane_to_disc(x, y)
    valid = valid & (np.hypot(u, v) <= 1.0 + BOUNDARY_TOLERANCE)

    src_rows, src_cols = self._disc_to_source(u, v)
    return np.where(valid, src_rows, -1.0), np.where(valid, src_cols, -1.0), valid

  def _plane_to_disc(self, x, y):
    raise NotImplementedError

  def _disc_to_plane(self, u, v):
    raise NotImplementedError


class BasicTransform(CoordinateTransform):
  """
  Radial stretch between the fisheye disc and a rectangular layout.

  Concentric squares of the destination map onto concentric circles of the
  disc along the same direction; no spherical geometry is involved.
  """

  def _plane_to_disc(self, x, y):
    scale = _safe_divide(np.maximum(np.abs(x), np.abs(y)), np.hypot(x, y))
    return x * scale, y * scale, np.ones(np.shape(scale), dtype=bool)

  def _disc_to_plane(self, u, v):
    scale = _safe_divide(np.hypot(u, v), np.maximum(np.abs(u), np.abs(v)))
    return u * scale, v * scale, np.ones(np.shape(scale), dtype=bool)


class LongLatTransform(CoordinateTransform):
  """
  Longitude-latitude mapping of the fisheye hemisphere.

  Destination columns span longitudes [-pi/2, pi/2], rows span latitudes
  [pi/2, -pi/2]; the disc radius follows the configured distance law.
  """

  def _plane_to_disc(self, x, y):
    longitude = x * HALF_PI
    latitude = latitude_from_v(y, np.pi)
    u, v = self.sphere_to_disc(*lonlat_to_sphere(longitude, latitude))
    return u, v, np.ones(np.shape(u), dtype=bool)

  def _disc_to_plane(self, u, v):
    x_s, y_s, z_s = self.disc_to_sphere(u, v)
    longitude = np.arctan2(x_s, z_s)
    latitude = np.arcsin(_clip_unit(y_s))
    return longitude / HALF_PI, latitude / HALF_PI, np.ones(np.shape(longitude), dtype=bool)


class PerspectiveLongLatLensTransform(CoordinateTransform):
  """
  Perspective-corrected longitude-latitude mapping with a camera lens model.

  The destination is the image plane of a virtual pinhole camera with a
  fixed field angle; each plane position is expressed as longitude/latitude
  before being projected through the lens law.
  """

  field_angle = CAM_FIELD_ANGLE

  def __init__(self, params: CorrectingParams, dst_shape: Tuple[int, ...]):
    super().__init__(params, dst_shape)
    # perspective correction factor: plane half-extent at unit depth
    self.factor = np.tan(self.field_angle / 2.0)

  def _plane_to_disc(self, x, y):
    longitude = np.arctan(x * self.factor)
    latitude = np.arctan(y * self.factor * np.cos(longitude))
    u, v = self.sphere_to_disc(*lonlat_to_sphere(longitude, latitude))
    return u, v, np.ones(np.shape(u), dtype=bool)

  def _disc_to_plane(self, u, v):
    x_s, y_s, z_s = self.disc_to_sphere(u, v)
    in_front = z_s > POLE_EPSILON
    depth = z_s * self.factor
    return _safe_divide(x_s, depth), _safe_divide(y_s, depth), in_front


class LongLatLensUnfixedTransform(CoordinateTransform):
  """
  Longitude-latitude mapping with a free field angle pair and tilt correction.

  The field angles come from `params.w`: wx is the longitude span and wy the
  latitude span measured down from the pole at the top row. Sphere points are
  rotated by a quarter turn about the X axis ("rotate earth") so the pole sits
  on the optical axis, which unwraps a camera looking straight up or down
  into a panorama.
  """

  TILT = HALF_PI

  def __init__(self, params: CorrectingParams, dst_shape: Tuple[int, ...]):
    super().__init__(params, dst_shape)
    self.wx, self.wy = params.w
    if self.wx <= 0 or self.wy <= 0:
      raise ConfigurationError(f"Free field angles must be positive: w={params.w}")

    c, s = np.cos(self.TILT), np.sin(self.TILT)
    # Earth frame -> camera frame
    self.rotation = np.array([
      [1, 0, 0],
      [0, c, -s],
      [0, s, c]
    ], dtype=np.float64)

  def rotate_earth(self, x_s, y_s, z_s, inverse=False):
    """Rotate unit sphere points between the earth frame and the camera frame."""
    rotation = self.rotation.T if inverse else self.rotation
    points = np.stack(np.broadcast_arrays(x_s, y_s, z_s), axis=0)
    rotated = np.einsum('ij,j...->i...', rotation, points)
    return rotated[0], rotated[1], rotated[2]

  def _plane_to_disc(self, x, y):
    longitude = x * (self.wx / 2.0)
    latitude = latitude_from_v(y, self.wy) + (HALF_PI - self.wy / 2.0)
    u, v = self.sphere_to_disc(*self.rotate_earth(*lonlat_to_sphere(longitude, latitude)))
    return u, v, np.ones(np.shape(u), dtype=bool)

  def _disc_to_plane(self, u, v):
    x_e, y_e, z_e = self.rotate_earth(*self.disc_to_sphere(u, v), inverse=True)
    # longitude is undefined at the pole; pin it to the central meridian
    at_pole = np.hypot(x_e, z_e) < POLE_EPSILON
    longitude = np.where(at_pole, 0.0, np.arctan2(x_e, z_e))
    latitude = np.arcsin(_clip_unit(y_e))
    x = longitude / (self.wx / 2.0)
    y = 1.0 - 2.0 * (HALF_PI - latitude) / self.wy
    return x, y, np.ones(np.shape(x), dtype=bool)


TRANSFORM_TABLE: Dict[CorrectingType, Tuple[Type[CoordinateTransform], Direction]] = {
  CorrectingType.BASIC_FORWARD: (BasicTransform, Direction.FORWARD),
  CorrectingType.BASIC_REVERSED: (BasicTransform, Direction.REVERSE),
  CorrectingType.LONG_LAT_MAPPING_FORWARD: (LongLatTransform, Direction.FORWARD),
  CorrectingType.LONG_LAT_MAPPING_REVERSED: (LongLatTransform, Direction.REVERSE),
  CorrectingType.PERSPECTIVE_LONG_LAT_MAPPING_CAM_LENS_MOD_FORWARD: (PerspectiveLongLatLensTransform, Direction.FORWARD),
  CorrectingType.PERSPECTIVE_LONG_LAT_MAPPING_CAM_LENS_MOD_REVERSED: (PerspectiveLongLatLensTransform, Direction.REVERSE),
  CorrectingType.LONG_LAT_MAPPING_CAM_LENS_MOD_UNFIXED_FORWARD: (LongLatLensUnfixedTransform, Direction.FORWARD),
  CorrectingType.LONG_LAT_MAPPING_CAM_LENS_MOD_UNFIXED_REVERSED: (LongLatLensUnfixedTransform, Direction.REVERSE),
}


def create_transform(params: CorrectingParams, dst_shape: Tuple[int, ...]) -> Tuple[CoordinateTransform, Direction]:
  """
  Build the transform family and loop direction for a correcting type.

  Parameters:
  - params: CorrectingParams selecting the family
  - dst_shape: shape of the destination raster

  Returns:
  - (transform, direction)

  Raises:
  ConfigurationError for OPENCV or any type without a transform.
  """
  try:
    transform_cls, direction = TRANSFORM_TABLE[params.ctype]
  except KeyError:
    raise ConfigurationError(f"No coordinate transform for correcting type {params.ctype!r}")
  return transform_cls(params, dst_shape), direction
