import os

import numpy as np
import pytest

from fisheye_correction import RemapCache
from fisheye_correction.remap_cache import parse_remap_records

from conftest import DST_SHAPE, make_params

CONFIG_HASH = 0x78de4b48


def _filled_cache(temp_path, entries=None):
  cache = RemapCache(temp_path=str(temp_path))
  if entries is None:
    entries = {(0, 0): (5, 6), (0, 1): (5, 7), (2, 3): (1, 1), (3, 3): (0, 9)}
  for dst, src in entries.items():
    cache.record(src, dst)
  return cache


def _table(cache):
  return sorted(zip(*(a.tolist() for a in cache.as_arrays())))


def test_new_cache_is_not_usable(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  assert not cache.is_usable()
  assert len(cache) == 0
  assert cache.temp_path == str(cache_dir)


def test_default_temp_path_is_system_temp():
  import tempfile
  assert RemapCache().temp_path == tempfile.gettempdir()


def test_record_and_lookup(cache_dir):
  cache = _filled_cache(cache_dir)
  assert cache.is_usable()
  assert len(cache) == 4
  assert cache.lookup((2, 3)) == (1, 1)

  cache.record((7, 7), (2, 3))
  assert cache.lookup((2, 3)) == (7, 7)
  assert len(cache) == 4


def test_lookup_of_unrecorded_pixel_raises(cache_dir):
  cache = _filled_cache(cache_dir)
  with pytest.raises(KeyError):
    cache.lookup((9, 9))


def test_clear(cache_dir):
  cache = _filled_cache(cache_dir)
  cache.clear()
  assert not cache.is_usable()
  assert len(cache) == 0
  with pytest.raises(KeyError):
    cache.lookup((0, 0))


def test_record_many_last_pair_wins(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  cache.record_many(np.array([1, 2, 3]), np.array([4, 5, 6]), np.array([0, 0, 1]), np.array([0, 0, 1]))
  assert len(cache) == 2
  assert cache.lookup((0, 0)) == (2, 5)
  assert cache.lookup((1, 1)) == (3, 6)


def test_apply_on_unusable_cache_changes_nothing(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  src = np.full((10, 10, 3), 200, dtype=np.uint8)
  dst = np.zeros((4, 4, 3), dtype=np.uint8)
  assert cache.apply(src, dst) is False
  assert not dst.any()


def test_apply_copies_recorded_pixels_only(cache_dir):
  cache = _filled_cache(cache_dir)
  src = np.arange(10 * 10 * 3, dtype=np.uint8).reshape(10, 10, 3)
  dst = np.full((4, 4, 3), 7, dtype=np.uint8)

  assert cache.apply(src, dst) is True
  np.testing.assert_array_equal(dst[0, 0], src[5, 6])
  np.testing.assert_array_equal(dst[0, 1], src[5, 7])
  np.testing.assert_array_equal(dst[2, 3], src[1, 1])
  np.testing.assert_array_equal(dst[3, 3], src[0, 9])

  untouched = np.ones((4, 4), dtype=bool)
  untouched[[0, 0, 2, 3], [0, 1, 3, 3]] = False
  assert (dst[untouched] == 7).all()


@pytest.mark.parametrize("entries", [
  {(0, 0): (-1, -1)},
  {(0, 0): (3, 10)},
  {(-1, 0): (1, 1)},
  {(0, 4): (1, 1)},
])
def test_apply_refuses_table_outside_rasters(cache_dir, entries):
  cache = _filled_cache(cache_dir, entries)
  src = np.zeros((4, 10, 3), dtype=np.uint8)
  src[3, 9] = 9
  dst = np.zeros((4, 4, 3), dtype=np.uint8)

  assert cache.apply(src, dst) is False
  assert not dst.any()
  assert cache.is_usable()


def test_apply_refuses_loaded_negative_positions(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  with open(cache.get_persist_filename(CONFIG_HASH), 'w') as f:
    f.write("0 0 -1 -1 ")
  assert cache.load(CONFIG_HASH) is True

  src = np.zeros((4, 4, 3), dtype=np.uint8)
  src[3, 3] = 9
  dst = np.zeros((4, 4, 3), dtype=np.uint8)
  assert cache.apply(src, dst) is False
  assert not dst.any()


def test_persist_filename(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  assert cache.get_persist_filename(CONFIG_HASH) == os.path.join(str(cache_dir), "REMAP78de4b48.dat")
  # negative (signed) hashes are written as their 32-bit pattern
  assert cache.get_persist_filename(-1).endswith("REMAPffffffff.dat")


def test_persist_clear_load_round_trip(cache_dir):
  cache = _filled_cache(cache_dir)
  expected = _table(cache)
  assert cache.persist(CONFIG_HASH) is True
  assert os.path.exists(cache.get_persist_filename(CONFIG_HASH))

  cache.clear()
  assert cache.load(CONFIG_HASH) is True
  assert cache.is_usable()
  assert _table(cache) == expected

  info = cache.get_info()
  assert info['loads'] == 1
  assert info['persists'] == 1
  assert info['entries'] == 4


def test_persisted_file_format(cache_dir):
  cache = _filled_cache(cache_dir, {(2, 3): (-1, 4)})
  cache.persist(CONFIG_HASH)
  with open(cache.get_persist_filename(CONFIG_HASH)) as f:
    assert f.read() == "2 3 -1 4 "


def test_persist_truncates_existing_file(cache_dir):
  big = _filled_cache(cache_dir)
  big.persist(CONFIG_HASH)
  small = _filled_cache(cache_dir, {(1, 1): (2, 2)})
  small.persist(CONFIG_HASH)

  reloaded = RemapCache(temp_path=str(cache_dir))
  assert reloaded.load(CONFIG_HASH)
  assert _table(reloaded) == [(1, 1, 2, 2)]


def test_load_missing_file_is_a_miss(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  assert cache.load(CONFIG_HASH) is False
  assert not cache.is_usable()


def test_load_unreadable_file_is_a_miss(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  # a directory where the file should be cannot be read as a table
  os.mkdir(cache.get_persist_filename(CONFIG_HASH))
  assert cache.load(CONFIG_HASH) is False
  assert not cache.is_usable()


def test_load_is_a_no_op_when_usable(cache_dir):
  cache = _filled_cache(cache_dir)
  assert cache.load(0x1234) is True
  assert len(cache) == 4
  assert cache.get_info()['loads'] == 0


def test_load_stops_at_garbage_and_drops_partial_record(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  with open(cache.get_persist_filename(CONFIG_HASH), 'w') as f:
    f.write("1 2 3 4\n5 6 7 8 9 10 oops 11 12")
  assert cache.load(CONFIG_HASH) is True
  assert _table(cache) == [(1, 2, 3, 4), (5, 6, 7, 8)]


@pytest.mark.parametrize("text, expected", [
  ("0 0 5 5 99999999999999999999999 1 2 3", [(0, 0, 5, 5)]),
  ("0 0 5 5 1 1 2147483648 3", [(0, 0, 5, 5)]),
  ("0 0 5 5 1 1 -2147483649 3", [(0, 0, 5, 5)]),
  ("0 0 5 5 1 1 -2147483648 2147483647", [(0, 0, 5, 5), (1, 1, -2147483648, 2147483647)]),
])
def test_load_stops_at_out_of_range_integer(cache_dir, text, expected):
  cache = RemapCache(temp_path=str(cache_dir))
  with open(cache.get_persist_filename(CONFIG_HASH), 'w') as f:
    f.write(text)
  assert cache.load(CONFIG_HASH) is True
  assert _table(cache) == expected


def test_out_of_range_cache_file_does_not_abort_correction(engine, disc_image):
  params = make_params()
  with open(engine.remap_cache.get_persist_filename(params.config_hash()), 'w') as f:
    f.write("0 0 5 5 99999999999999999999999 1 2 3")

  dst = engine.do_correct(disc_image, np.zeros(DST_SHAPE, dtype=np.uint8), params)
  # only the record before the overflowing token is replayed
  assert engine.get_info()['cache_hits'] == 1
  assert len(engine.remap_cache) == 1
  np.testing.assert_array_equal(dst[0, 0], disc_image[5, 5])


def test_load_empty_file_is_not_usable(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  open(cache.get_persist_filename(CONFIG_HASH), 'w').close()
  assert cache.load(CONFIG_HASH) is True
  assert not cache.is_usable()


def test_persist_requires_usable_table(cache_dir):
  cache = RemapCache(temp_path=str(cache_dir))
  with pytest.raises(RuntimeError):
    cache.persist(CONFIG_HASH)


def test_persist_failure_keeps_table(tmp_path):
  cache = _filled_cache(tmp_path / "does" / "not" / "exist")
  assert cache.persist(CONFIG_HASH) is False
  assert cache.is_usable()
  assert cache.lookup((0, 0)) == (5, 6)


@pytest.mark.parametrize("text, expected", [
  ("", []),
  ("1 2 3", []),
  ("1 2 3 4 5", [[1, 2, 3, 4]]),
  ("  -1\t2\n3 4  ", [[-1, 2, 3, 4]]),
  ("1 2 3 4 x 5 6 7 8", [[1, 2, 3, 4]]),
])
def test_parse_remap_records(text, expected):
  records = parse_remap_records(text)
  assert records.shape == (len(expected), 4)
  assert records.tolist() == expected


def test_fits(cache_dir):
  cache = _filled_cache(cache_dir)
  assert cache.fits((10, 10, 3), (4, 4, 3))
  assert not cache.fits((10, 9, 3), (4, 4, 3))
  assert not cache.fits((10, 10, 3), (3, 4, 3))


def test_to_maps(cache_dir):
  cache = _filled_cache(cache_dir)
  map_x, map_y = cache.to_maps((4, 4, 3))
  assert map_x.dtype == np.float32 and map_x.shape == (4, 4)
  assert (map_x[2, 3], map_y[2, 3]) == (1.0, 1.0)
  assert (map_x[0, 1], map_y[0, 1]) == (7.0, 5.0)
  assert map_x[1, 1] == -1.0 and map_y[1, 1] == -1.0
