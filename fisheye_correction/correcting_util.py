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
import multiprocessing
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np

from .coordinate_transforms import CoordinateTransform, Direction, create_transform
from .correcting_params import ConfigurationError, CorrectingParams
from .remap_cache import RemapCache, table_to_maps

logger = logging.getLogger(__name__)

RemapArrays = Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]


def apply_correction_maps(img: np.ndarray, map_x: np.ndarray, map_y: np.ndarray) -> np.ndarray:
  """
  Apply exported correction maps to a fisheye image.

  Parameters:
  - img: fisheye image as numpy array
  - map_x: array of source columns for each output pixel (-1 where unmapped)
  - map_y: array of source rows for each output pixel (-1 where unmapped)

  Returns:
  - corrected image, black where no source pixel is mapped
  """
  if img is None:
    raise ValueError("Input image is None")

  output_height, output_width = map_x.shape
  logger.debug("Applying correction maps with OpenCV remap to create %dx%d image", output_width, output_height)

  start_time = time.time()

  # Maps hold whole pixel positions, nearest neighbour reproduces them exactly
  result = cv2.remap(img, map_x, map_y, cv2.INTER_NEAREST, borderMode=cv2.BORDER_CONSTANT, borderValue=0)

  remap_time = time.time() - start_time
  logger.info("OpenCV remap processing time: %.4f seconds", remap_time)

  return result


def _keep_last_per_destination(arrays: RemapArrays, dst_width: int) -> RemapArrays:
  """Drop duplicate destination pixels, keeping the last pair written to each."""
  dst_rows, dst_cols = arrays[0], arrays[1]
  if len(dst_rows) == 0:
    return arrays
  linear = dst_rows * dst_width + dst_cols
  _, first_in_reversed = np.unique(linear[::-1], return_index=True)
  keep = np.sort(len(linear) - 1 - first_in_reversed)
  return tuple(a[keep] for a in arrays)


class CorrectingUtil:
  """
  Fisheye correcting engine with a persisted remap cache.

  For each frame the engine either replays the remap table recorded for the
  same CorrectingParams (no per-pixel trigonometry at all) or builds the table
  from the selected coordinate transform, copies the pixels and stores the
  table for the next run.
  """

  def __init__(self, temp_path: Optional[str] = None, use_vectorized: bool = True,
               remap_cache: Optional[RemapCache] = None):
    """
    Initialize the correcting engine.

    Parameters:
    - temp_path: directory for persisted remap tables (system temp dir if None)
    - use_vectorized: if True, use fast vectorized table generation; if False, use the per-pixel reference loop
    - remap_cache: Optional remap cache. If None, creates a new one in temp_path.
    """
    self.remap_cache = remap_cache if remap_cache is not None else RemapCache(temp_path)
    self.use_vectorized = use_vectorized

    # Configuration hash the in-memory table belongs to
    self._cached_hash = None
    self._cache_hits = 0
    self._cache_misses = 0
    self._transformed_pixels = 0
    self._last_cache_hit = False

  def _validate_inputs(self, src_image: np.ndarray, dst_image: np.ndarray, params: CorrectingParams):
    if not isinstance(src_image, np.ndarray) or not isinstance(dst_image, np.ndarray):
      raise ConfigurationError("Source and destination images must be numpy arrays")
    if src_image.ndim < 2 or dst_image.ndim < 2 or src_image.size == 0 or dst_image.size == 0:
      raise ConfigurationError(f"Invalid image shapes: src={src_image.shape}, dst={dst_image.shape}")
    if src_image.shape[2:] != dst_image.shape[2:] or src_image.dtype != dst_image.dtype:
      raise ConfigurationError(f"Pixel type mismatch: src={src_image.shape[2:]}/{src_image.dtype}, "
                               f"dst={dst_image.shape[2:]}/{dst_image.dtype}")
    if not dst_image.flags.writeable:
      raise ConfigurationError("Destination image is read-only")

    params.validate(src_image.shape)

  def do_correct(self, src_image: np.ndarray, dst_image: np.ndarray,
                 params: Optional[CorrectingParams] = None) -> np.ndarray:
    """
    Correct one fisheye frame into the destination raster.

    Destination pixels outside the projection domain are left untouched, so
    callers that need full coverage should clear the destination first.

    Parameters:
    - src_image: fisheye frame, cropped to the disc's bounding square
    - dst_image: destination raster, modified in place
    - params: CorrectingParams, defaults to CorrectingParams()

    Returns:
    - dst_image

    Raises:
    ConfigurationError for unsupported types, bad geometry or mismatching buffers.
    """
    if params is None:
      params = CorrectingParams()
    self._validate_inputs(src_image, dst_image, params)

    start_time = time.time()
    config_hash = None

    if params.use_remap:
      config_hash = params.config_hash()
      if self._cached_hash != config_hash:
        self.remap_cache.clear()
        self._cached_hash = config_hash

      if self.remap_cache.load(config_hash) and self.remap_cache.is_usable():
        if self.remap_cache.fits(src_image.shape, dst_image.shape):
          self.remap_cache.apply(src_image, dst_image)
          self._cache_hits += 1
          self._last_cache_hit = True
          logger.info("Remap cache hit for %s (%.4f seconds)", params, time.time() - start_time)
          return dst_image

        logger.warning("Remap table %08x does not fit src=%s dst=%s, rebuilding",
                       config_hash, src_image.shape[:2], dst_image.shape[:2])
        self.remap_cache.clear()

    self._cache_misses += 1
    self._last_cache_hit = False

    transform, direction = create_transform(params, dst_image.shape)
    dst_rows, dst_cols, src_rows, src_cols = self.generate_remap_table(
      transform, direction, src_image.shape, dst_image.shape)
    dst_image[dst_rows, dst_cols] = src_image[src_rows, src_cols]

    if params.use_remap:
      self.remap_cache.record_many(src_rows, src_cols, dst_rows, dst_cols)
      if self.remap_cache.is_usable():
        self.remap_cache.persist(config_hash)

    correct_time = time.time() - start_time
    logger.info("Corrected frame with %s: %d pixels mapped in %.4f seconds",
                params.ctype.name, len(dst_rows), correct_time)
    return dst_image

  def generate_remap_table(self, transform: CoordinateTransform, direction: Direction,
                           src_shape: Tuple[int, ...], dst_shape: Tuple[int, ...]) -> RemapArrays:
    """
    Build the destination -> source table for a transform.

    Dispatches to either vectorized (fast) or reference (slow but easy to follow) implementation.

    Returns:
    - dst_rows, dst_cols, src_rows, src_cols: int64 arrays, one entry per mapped destination pixel
    """
    if self.use_vectorized:
      arrays = self._generate_remap_table_vectorized(transform, direction, src_shape, dst_shape)
    else:
      arrays = self._generate_remap_table_reference(transform, direction, src_shape, dst_shape)

    if direction == Direction.FORWARD:
      arrays = _keep_last_per_destination(arrays, dst_shape[1])
    return arrays

  def _source_pixel_usable(self, transform: CoordinateTransform, src_rows, src_cols, src_shape):
    """Rounded source positions must fall inside both the raster and the disc."""
    in_bounds = (src_rows >= 0) & (src_rows < src_shape[0]) & (src_cols >= 0) & (src_cols < src_shape[1])
    dr = src_rows - transform.cy
    dc = src_cols - transform.cx
    radius = int(transform.radius)
    return in_bounds & (dr * dr + dc * dc <= radius * radius)

  def _generate_remap_table_reference(self, transform: CoordinateTransform, direction: Direction,
                                      src_shape: Tuple[int, ...], dst_shape: Tuple[int, ...]) -> RemapArrays:
    """
    Reference implementation: one transform call per pixel in nested loops.

    Kept for debugging and for checking the vectorized path.
    """
    start_time = time.time()
    pairs = []

    if direction == Direction.REVERSE:
      for i_dst in range(dst_shape[0]):
        for j_dst in range(dst_shape[1]):
          self._transformed_pixels += 1
          i_src, j_src, valid = transform.reverse(i_dst, j_dst)
          if not valid:
            continue
          i_src, j_src = int(np.rint(i_src)), int(np.rint(j_src))
          if self._source_pixel_usable(transform, i_src, j_src, src_shape):
            pairs.append((i_dst, j_dst, i_src, j_src))
    else:
      for i_src in range(src_shape[0]):
        for j_src in range(src_shape[1]):
          if not self._source_pixel_usable(transform, i_src, j_src, src_shape):
            continue
          self._transformed_pixels += 1
          i_dst, j_dst, valid = transform.forward(i_src, j_src)
          if not valid:
            continue
          i_dst, j_dst = int(np.rint(i_dst)), int(np.rint(j_dst))
          if 0 <= i_dst < dst_shape[0] and 0 <= j_dst < dst_shape[1]:
            pairs.append((i_dst, j_dst, i_src, j_src))

    table = np.array(pairs, dtype=np.int64).reshape(-1, 4)
    logger.info("Reference remap table generation time: %.4f seconds", time.time() - start_time)
    return table[:, 0], table[:, 1], table[:, 2], table[:, 3]

  def _process_row_chunk(self, transform: CoordinateTransform, direction: Direction,
                         row_start: int, row_end: int,
                         src_shape: Tuple[int, ...], dst_shape: Tuple[int, ...]) -> Tuple[RemapArrays, int]:
    """
    Process a chunk of rows for remap table generation.

    Rows are destination rows for reverse types and source rows for forward types.

    Returns:
    - ((dst_rows, dst_cols, src_rows, src_cols), number of pixels transformed)
    """
    width = dst_shape[1] if direction == Direction.REVERSE else src_shape[1]
    cols, rows = np.meshgrid(np.arange(width, dtype=np.int64), np.arange(row_start, row_end, dtype=np.int64))
    rows = rows.ravel()
    cols = cols.ravel()

    if direction == Direction.REVERSE:
      src_rows_f, src_cols_f, valid = transform.reverse(rows, cols)
      src_rows = np.rint(src_rows_f).astype(np.int64)
      src_cols = np.rint(src_cols_f).astype(np.int64)
      keep = valid & self._source_pixel_usable(transform, src_rows, src_cols, src_shape)
      return (rows[keep], cols[keep], src_rows[keep], src_cols[keep]), len(rows)

    in_disc = self._source_pixel_usable(transform, rows, cols, src_shape)
    rows, cols = rows[in_disc], cols[in_disc]
    dst_rows_f, dst_cols_f, valid = transform.forward(rows, cols)
    dst_rows = np.rint(dst_rows_f).astype(np.int64)
    dst_cols = np.rint(dst_cols_f).astype(np.int64)
    keep = valid & (dst_rows >= 0) & (dst_rows < dst_shape[0]) & (dst_cols >= 0) & (dst_cols < dst_shape[1])
    return (dst_rows[keep], dst_cols[keep], rows[keep], cols[keep]), len(rows)

  def _generate_remap_table_vectorized(self, transform: CoordinateTransform, direction: Direction,
                                       src_shape: Tuple[int, ...], dst_shape: Tuple[int, ...]) -> RemapArrays:
    """
    Parallel vectorized implementation: NumPy array operations over row chunks with multi-threading.

    Chunks are concatenated in row order, so the result does not depend on scheduling.
    """
    start_time = time.time()
    total_rows = dst_shape[0] if direction == Direction.REVERSE else src_shape[0]
    total_cols = dst_shape[1] if direction == Direction.REVERSE else src_shape[1]

    # at most 8 workers, two chunks each, never under 32 rows per chunk
    num_cores = min(multiprocessing.cpu_count(), 8)
    min_chunk_size = 32
    chunk_size = max(min_chunk_size, total_rows // (num_cores * 2))

    if total_rows < 128 or total_cols < 128:
      logger.debug("Using single-threaded processing for small image")
      chunks = [self._process_row_chunk(transform, direction, 0, total_rows, src_shape, dst_shape)]
    else:
      logger.debug("Using %d threads with chunk size %d rows", num_cores, chunk_size)
      with ThreadPoolExecutor(max_workers=num_cores) as executor:
        futures = [
          executor.submit(self._process_row_chunk, transform, direction,
                          row_start, min(row_start + chunk_size, total_rows), src_shape, dst_shape)
          for row_start in range(0, total_rows, chunk_size)
        ]
        chunks = [future.result() for future in futures]

    self._transformed_pixels += sum(count for _, count in chunks)
    arrays = tuple(np.concatenate([chunk[i] for chunk, _ in chunks]) for i in range(4))

    map_generation_time = time.time() - start_time
    logger.info("Parallel vectorized remap table generation time: %.4f seconds", map_generation_time)
    return arrays

  def get_correction_maps(self, params: CorrectingParams, src_shape: Tuple[int, ...],
                          dst_shape: Tuple[int, ...]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute cv2.remap style maps for a configuration without touching any image.

    Returns:
    - map_x, map_y: float32 source columns/rows per destination pixel, -1 where unmapped
    """
    params.validate(src_shape)
    transform, direction = create_transform(params, dst_shape)
    return table_to_maps(self.generate_remap_table(transform, direction, src_shape, dst_shape), dst_shape)

  def clear_cache(self):
    """Forget the in-memory remap table; persisted files are kept."""
    self.remap_cache.clear()
    self._cached_hash = None
    logger.debug("Remap cache cleared")

  def get_info(self) -> Dict[str, Any]:
    """
    Get engine statistics.

    Returns:
    - Dictionary with cache hit/miss counters, number of pixels pushed through a
      transform and the remap cache state
    """
    return {
      'cache_hits': self._cache_hits,
      'cache_misses': self._cache_misses,
      'transformed_pixels': self._transformed_pixels,
      'last_cache_hit': self._last_cache_hit,
      'remap_cache': self.remap_cache.get_info()
    }
