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

import logging
import os
import tempfile
import time
from typing import Any, Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

PERSIST_PREFIX = "REMAP"
PERSIST_SUFFIX = ".dat"

# Records are written with "%d"
INT32_MIN = -2 ** 31
INT32_MAX = 2 ** 31 - 1


def parse_remap_records(text: str) -> np.ndarray:
  """
  Parse persisted remap data into an (N, 4) array of
  (dst_row, dst_col, src_row, src_col) records.

  Parsing stops at the first token that is not an integer in the 32-bit
  signed range; a trailing partial record is dropped.
  """
  tokens = text.split()
  try:
    values = np.array(tokens, dtype=np.int64)
  except (ValueError, OverflowError):
    values = None

  if values is None or (values.size and (values.min() < INT32_MIN or values.max() > INT32_MAX)):
    parsed = []
    for token in tokens:
      try:
        value = int(token)
      except ValueError:
        break
      if not INT32_MIN <= value <= INT32_MAX:
        break
      parsed.append(value)
    values = np.array(parsed, dtype=np.int64)

  count = len(values) // 4
  return values[:count * 4].reshape(count, 4)


def table_to_maps(arrays, dst_shape: Tuple[int, ...]) -> Tuple[np.ndarray, np.ndarray]:
  """
  Turn (dst_rows, dst_cols, src_rows, src_cols) arrays into cv2.remap maps.

  Returns:
  - map_x, map_y: float32 source columns/rows per destination pixel, -1 where unmapped
  """
  dst_rows, dst_cols, src_rows, src_cols = arrays
  map_x = np.full(dst_shape[:2], -1.0, dtype=np.float32)
  map_y = np.full(dst_shape[:2], -1.0, dtype=np.float32)
  map_x[dst_rows, dst_cols] = src_cols
  map_y[dst_rows, dst_cols] = src_rows
  return map_x, map_y


class RemapCache:
  """
  Destination -> source pixel table for one correction configuration.

  The table is filled either by replaying a persisted file or by a fresh
  correction pass, and can then be applied to every following frame without
  any per-pixel geometry. Persisted files live in `temp_path` and are named
  after the configuration hash.

  One cache belongs to one correcting engine; it is not thread-safe.
  """

  def __init__(self, temp_path: Optional[str] = None):
    """
    Initialize an empty remap cache.

    Parameters:
    - temp_path: directory for persisted tables. Defaults to the system temporary directory.
    """
    self.temp_path = temp_path if temp_path is not None else tempfile.gettempdir()
    self._map: Dict[Tuple[int, int], Tuple[int, int]] = {}
    self._mapped = False
    self._arrays = None
    self._load_count = 0
    self._persist_count = 0

  def clear(self) -> None:
    """Drop every entry and mark the table as not built."""
    self._map.clear()
    self._mapped = False
    self._arrays = None

  def is_usable(self) -> bool:
    return self._mapped and len(self._map) > 0

  def __len__(self):
    return len(self._map)

  def lookup(self, dst_pos: Tuple[int, int]) -> Tuple[int, int]:
    """
    Source position recorded for a destination position.

    Raises:
    - KeyError if the destination position was never recorded
    """
    key = (int(dst_pos[0]), int(dst_pos[1]))
    try:
      return self._map[key]
    except KeyError:
      raise KeyError(f"No remap entry for destination pixel {key}")

  def record(self, src_pos: Tuple[int, int], dst_pos: Tuple[int, int]) -> None:
    """Insert or overwrite the source position of one destination pixel."""
    self._mapped = True
    self._arrays = None
    self._map[(int(dst_pos[0]), int(dst_pos[1]))] = (int(src_pos[0]), int(src_pos[1]))

  def record_many(self, src_rows, src_cols, dst_rows, dst_cols) -> None:
    """
    Record a batch of (source, destination) pairs; later pairs win on duplicates.

    Parameters:
    - src_rows, src_cols, dst_rows, dst_cols: equally sized integer arrays
    """
    dst_keys = zip(np.asarray(dst_rows).tolist(), np.asarray(dst_cols).tolist())
    src_values = zip(np.asarray(src_rows).tolist(), np.asarray(src_cols).tolist())
    self._map.update(zip(dst_keys, src_values))
    self._mapped = True
    self._arrays = None

  def as_arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Return the table as (dst_rows, dst_cols, src_rows, src_cols) index arrays.
    """
    if self._arrays is None:
      if self._map:
        table = np.array([key + value for key, value in self._map.items()], dtype=np.int64)
      else:
        table = np.empty((0, 4), dtype=np.int64)
      self._arrays = (table[:, 0], table[:, 1], table[:, 2], table[:, 3])
    return self._arrays

  def fits(self, src_shape: Tuple[int, ...], dst_shape: Tuple[int, ...]) -> bool:
    """Check that every recorded position lies inside the given raster shapes."""
    if not self._map:
      return True
    dst_rows, dst_cols, src_rows, src_cols = self.as_arrays()
    return bool(
      dst_rows.min() >= 0 and dst_rows.max() < dst_shape[0] and
      dst_cols.min() >= 0 and dst_cols.max() < dst_shape[1] and
      src_rows.min() >= 0 and src_rows.max() < src_shape[0] and
      src_cols.min() >= 0 and src_cols.max() < src_shape[1]
    )

  def apply(self, src_image: np.ndarray, dst_image: np.ndarray) -> bool:
    """
    Copy source pixels into the destination following the recorded table.

    Destination pixels without an entry are left untouched.

    Parameters:
    - src_image: source raster
    - dst_image: destination raster, modified in place

    Returns:
    - False (and no change) if the table is not usable or has positions
      outside either raster, True otherwise
    """
    if not self.is_usable():
      return False
    if not self.fits(src_image.shape, dst_image.shape):
      logger.warning("Remap table does not fit src=%s dst=%s, not applied",
                     src_image.shape[:2], dst_image.shape[:2])
      return False

    dst_rows, dst_cols, src_rows, src_cols = self.as_arrays()
    dst_image[dst_rows, dst_cols] = src_image[src_rows, src_cols]
    logger.debug("Remap table applied (%d entries)", len(self._map))
    return True

  def to_maps(self, dst_shape: Tuple[int, ...]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Export the table as cv2.remap style maps.

    Returns:
    - map_x, map_y: float32 arrays of the destination shape holding source
      columns/rows, -1 where no entry was recorded
    """
    return table_to_maps(self.as_arrays(), dst_shape)

  def get_persist_filename(self, config_hash: int) -> str:
    """Deterministic file name for a configuration hash (lowercase hex, 32-bit)."""
    return os.path.join(self.temp_path, f"{PERSIST_PREFIX}{config_hash & 0xFFFFFFFF:x}{PERSIST_SUFFIX}")

  def load(self, config_hash: int) -> bool:
    """
    Replay a persisted table for the given configuration hash.

    A table that is already usable is kept as is. A missing or unreadable
    file is a cache miss, not an error.

    Returns:
    - True if the table is usable or was read from disk, False on a miss
    """
    if self.is_usable():
      return True

    filename = self.get_persist_filename(config_hash)
    start_time = time.time()
    try:
      with open(filename, 'r') as f:
        text = f.read()
    except FileNotFoundError:
      logger.debug("Remap cache file not found: %s", filename)
      return False
    except (OSError, UnicodeDecodeError) as e:
      logger.warning("Cannot read remap cache file %s: %s", filename, e)
      return False

    records = parse_remap_records(text)
    self._map = {(a, b): (c, d) for a, b, c, d in records.tolist()}
    self._mapped = True
    self._arrays = None
    self._load_count += 1

    load_time = time.time() - start_time
    logger.info("Loaded remap cache %s: %d entries in %.4f seconds", filename, len(self._map), load_time)
    return True

  def persist(self, config_hash: int) -> bool:
    """
    Write the table to the file named after the configuration hash.

    The file is truncated on every write. Write failures are logged and
    leave the in-memory table untouched.

    Returns:
    - True if the file was written

    Raises:
    - RuntimeError if the table is not usable
    """
    if not self.is_usable():
      raise RuntimeError("Cannot persist a remap table that has not been built")

    filename = self.get_persist_filename(config_hash)
    start_time = time.time()
    dst_rows, dst_cols, src_rows, src_cols = self.as_arrays()
    records = np.stack([dst_rows, dst_cols, src_rows, src_cols], axis=1)
    try:
      with open(filename, 'w') as f:
        f.write(" ".join(map(str, records.ravel().tolist())))
        f.write(" ")
    except OSError as e:
      logger.warning("Cannot persist remap cache to %s: %s", filename, e)
      return False

    self._persist_count += 1
    persist_time = time.time() - start_time
    logger.info("Persisted remap cache %s: %d entries in %.4f seconds", filename, len(self._map), persist_time)
    return True

  def get_info(self) -> Dict[str, Any]:
    """
    Get remap cache statistics.

    Returns:
    - Dictionary with entry count, state and disk activity counters
    """
    dst_rows = self.as_arrays()[0]
    return {
      'entries': len(self._map),
      'mapped': self._mapped,
      'usable': self.is_usable(),
      'memory_usage_bytes': 4 * dst_rows.nbytes,
      'loads': self._load_count,
      'persists': self._persist_count,
      'temp_path': self.temp_path
    }
