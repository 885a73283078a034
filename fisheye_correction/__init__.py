"""
Fisheye Correction Core Modules

This package contains the core algorithms for per-frame fisheye correction:
- Correcting parameters, their identity and configuration hash
- Coordinate transform families (basic, long-lat, perspective lens model, unfixed lens model)
- Persisted remap cache
- Correcting engine
"""

from .correcting_params import (ConfigurationError, CorrectingParams, CorrectingType, DistanceMappingType,
                                parse_correcting_params, parse_correcting_params_dict)
from .coordinate_transforms import (CoordinateTransform, Direction, TRANSFORM_TABLE, BasicTransform,
                                    LongLatTransform, PerspectiveLongLatLensTransform,
                                    LongLatLensUnfixedTransform, create_transform)
from .remap_cache import RemapCache
from .correcting_util import CorrectingUtil, apply_correction_maps

__all__ = [
  'ConfigurationError',
  'CorrectingParams',
  'CorrectingType',
  'DistanceMappingType',
  'parse_correcting_params',
  'parse_correcting_params_dict',
  'CoordinateTransform',
  'Direction',
  'TRANSFORM_TABLE',
  'BasicTransform',
  'LongLatTransform',
  'PerspectiveLongLatLensTransform',
  'LongLatLensUnfixedTransform',
  'create_transform',
  'RemapCache',
  'CorrectingUtil',
  'apply_correction_maps'
]
