import struct
import threading

import numpy
import pytest

from bedrockviewer_core import keys
from bedrockviewer_core.errors import (PaletteIndexOutOfRange, Truncated,
                                       UnknownDimensionId, UnsupportedSubchunkVersion)
from bedrockviewer_core.keys import ChunkTag, RecordKind
from bedrockviewer_core.store import MemoryStore
from bedrockviewer_core.world import (ChunkDoesntExist, Dimension, UnsupportedVersion,
                                      World, decode_heightmap, decode_metadata_dictionary)

from builders import (TAG_COMPOUND, TAG_INT, TAG_LONG, TAG_STRING, cell, chunk_key,
                      compound_payload, level_dat, named, pack, pack_indices,
                      string_payload, subchunk_value)


def level_root(name="From level.dat", spawn=(8, 32767, 8)):
    entries = [
        named(TAG_STRING, "LevelName", string_payload(name)),
        named(TAG_LONG, "RandomSeed", pack("q", -1234)),
    ]
    if spawn is not None:
        entries += [
            named(TAG_INT, "SpawnX", pack("i", spawn[0])),
            named(TAG_INT, "SpawnY", pack("i", spawn[1])),
            named(TAG_INT, "SpawnZ", pack("i", spawn[2])),
        ]
    return compound_payload(*entries)


@pytest.fixture
def worlddir(tmp_path):
    (tmp_path / "level.dat").write_bytes(level_dat(level_root()))
    (tmp_path / "levelname.txt").write_text("My World\n", encoding="utf-8")
    return tmp_path


def stone_column(top):
    """A sub-chunk with stone at every y <= top in every column."""
    indices = [0] * 4096
    for x in range(16):
        for z in range(16):
            for y in range(top + 1):
                indices[cell(x, y, z)] = 1
    return subchunk_value(indices, ["minecraft:air", "minecraft:stone"], 1)


def nbt_record(**ints):
    return named(TAG_COMPOUND, "", compound_payload(
        *[named(TAG_INT, k, pack("i", v)) for k, v in ints.items()]))


def test_open_reads_level_dat(worlddir):
    world = World(str(worlddir))
    assert world.name == "My World"
    assert world.seed == -1234
    assert world.spawn == (8, 32767, 8)
    assert world.storage_version == 10
    assert [d.get_type() for d in world.get_dimensions()] == ["overworld", "nether", "the-end"]
    assert world.get_dimension("nether") is world.dimensions[keys.NETHER]
    assert world.get_dimension("nowhere") is None


def test_name_falls_back_to_level_dat(worlddir):
    (worlddir / "levelname.txt").unlink()
    assert World(str(worlddir)).name == "From level.dat"


def test_level_dat_copy_is_independent(worlddir):
    world = World(str(worlddir))
    data = world.get_level_dat_data()
    data["LevelName"] = "changed"
    assert world.leveldat["LevelName"] == "From level.dat"


def test_missing_level_dat(tmp_path):
    with pytest.raises(ValueError):
        World(str(tmp_path))


def test_unreadable_level_dat(tmp_path):
    (tmp_path / "level.dat").write_bytes(b"\x0a\x00\x00\x00\xff\x00\x00\x00\x0a")
    with pytest.raises(UnsupportedVersion):
        World(str(tmp_path))


def test_scan_merges_subchunks_and_yields_other_records(worlddir):
    world = World(str(worlddir))
    store = MemoryStore({
        chunk_key(0, 0, 47, sub_tag=0): stone_column(3),
        chunk_key(0, 0, 47, sub_tag=1): stone_column(0),
        chunk_key(-1, 2, 47, sub_tag=0, dimension=1): stone_column(0),
        chunk_key(0, 0, 44): b"\x28",
        b"~local_player": nbt_record(Health=20),
        b"digp" + struct.pack("<ii", 0, 0): struct.pack("<Q", 9),
        b"game_flatworldlayers": b'{"biome_id":1}',
    })

    records = list(world.scan(store))

    assert world.errors == []
    overworld = world.dimensions[keys.OVERWORLD]
    assert sorted(overworld.iterate_chunks()) == [(0, 0)]
    column = overworld.get_chunk(0, 0)
    assert sorted(column.subchunks) == [0, 1]
    assert column.format_version == 0x28
    assert world.get_block(keys.OVERWORLD, 5, 3, 5) == "minecraft:stone"
    assert world.get_block(keys.OVERWORLD, 5, 4, 5) == "minecraft:air"
    assert world.get_block(keys.OVERWORLD, 5, 16, 5) == "minecraft:stone"
    assert world.get_block(keys.OVERWORLD, 5, 100, 5) is None
    assert world.dimensions[keys.NETHER].does_chunk_exist(-1, 2)

    by_kind = dict((r.kind, r) for r in records)
    assert by_kind[RecordKind.LOCAL_PLAYER].value == {"Health": 20}
    assert by_kind[RecordKind.ACTOR_DIGEST_POINTER].value == [9]
    assert by_kind[RecordKind.FLAT_WORLD_LAYERS].value == '{"biome_id":1}'
    assert all(r.error is None for r in records)


def test_bad_record_does_not_stop_scan(worlddir, caplog):
    world = World(str(worlddir))
    bad_key = chunk_key(0, 0, 47, sub_tag=0)
    store = MemoryStore({
        bad_key: b"\x07\x01\x02",
        chunk_key(1, 0, 47, sub_tag=0): stone_column(0),
        b"scoreboard": b"\x0a\x00",
    })

    records = list(world.scan(store))

    assert world.dimensions[0].does_chunk_exist(1, 0)
    assert not world.dimensions[0].does_chunk_exist(0, 0)
    assert [(e.key, e.kind) for e in world.errors] == [
        (bad_key, RecordKind.CHUNK), (b"scoreboard", RecordKind.SCOREBOARD)]
    assert isinstance(world.errors[0].error, UnsupportedSubchunkVersion)
    assert isinstance(world.errors[1].error, Truncated)
    assert records[0].kind == RecordKind.SCOREBOARD
    assert isinstance(records[0].error, Truncated)
    assert "Skipping" in caplog.text


def test_odd_palette_version_does_not_stop_scan(worlddir):
    world = World(str(worlddir))
    entry = named(TAG_COMPOUND, "", compound_payload(
        named(TAG_STRING, "name", string_payload("minecraft:stone")),
        named(TAG_STRING, "version", string_payload("abc"))))
    value = (bytes([0x08, 0x01, 0x02]) + pack_indices([0] * 4096, 1) +
             struct.pack("<i", 1) + entry)
    store = MemoryStore({
        chunk_key(0, 0, 47, sub_tag=0): value,
        b"~local_player": nbt_record(Health=20),
    })

    records = list(world.scan(store))

    assert world.errors == []
    assert world.get_block(keys.OVERWORLD, 0, 0, 0) == "minecraft:stone"
    assert [r.kind for r in records] == [RecordKind.LOCAL_PLAYER]


def test_unknown_dimension_is_recorded(worlddir):
    world = World(str(worlddir))
    store = MemoryStore({chunk_key(0, 0, 47, sub_tag=0, dimension=5): stone_column(0)})
    list(world.scan(store))
    assert len(world.errors) == 1
    assert isinstance(world.errors[0].error, UnknownDimensionId)
    assert world.errors[0].error.dimension_id == 5
    assert all(not d.chunks for d in world.dimensions)


def test_out_of_range_cells_are_reported(worlddir):
    world = World(str(worlddir))
    indices = [0] * 4096
    indices[cell(2, 2, 2)] = 3
    store = MemoryStore({chunk_key(0, 0, 47, sub_tag=0): subchunk_value(indices, ["air", "dirt"], 2)})

    list(world.scan(store))

    assert isinstance(world.errors[0].error, PaletteIndexOutOfRange)
    assert world.get_block(0, 0, 0, 0) == "air"
    with pytest.raises(PaletteIndexOutOfRange):
        world.get_block(0, 2, 2, 2)


def test_v9_y_index_picks_the_slot(worlddir):
    world = World(str(worlddir))
    value = subchunk_value([1] * 4096, ["air", "deepslate"], 1, fmt=9, y_index=-4)
    store = MemoryStore({chunk_key(0, 0, 47, sub_tag=-4): value})
    list(world.scan(store))
    column = world.dimensions[0].get_chunk(0, 0)
    assert list(column.subchunks) == [-4]
    assert world.get_block(0, 3, -60, 3) == "deepslate"


def test_negative_coordinates(worlddir):
    world = World(str(worlddir))
    store = MemoryStore({chunk_key(-1, -1, 47, sub_tag=0): stone_column(0)})
    list(world.scan(store))
    assert world.get_block(0, -1, 0, -16) == "minecraft:stone"
    with pytest.raises(ChunkDoesntExist):
        world.get_block(0, 0, 0, 0)


class SetAfter(object):
    """A cancel flag that trips once it has been checked n times."""
    def __init__(self, n):
        self.n = n
        self.checks = 0

    def is_set(self):
        self.checks += 1
        return self.checks > self.n


def test_cancel_stops_scan(worlddir):
    world = World(str(worlddir))
    store = MemoryStore(dict((chunk_key(i, 0, 47, sub_tag=0), stone_column(0)) for i in range(5)))

    list(world.scan(store, cancel=SetAfter(2)))
    assert sorted(world.dimensions[0].iterate_chunks()) == [(0, 0), (1, 0)]

    cancel = threading.Event()
    cancel.set()
    other = World(str(worlddir))
    list(other.scan(store, cancel=cancel))
    assert not other.dimensions[0].chunks

    list(world.scan(store, cancel=threading.Event()))
    assert len(world.dimensions[0].chunks) == 5


def test_chunk_bounds(worlddir):
    world = World(str(worlddir))
    store = MemoryStore({
        chunk_key(-3, 4, 47, sub_tag=0): stone_column(0),
        chunk_key(5, -2, 47, sub_tag=0): stone_column(0),
        chunk_key(9, 9, 45): bytes(768),
    })
    assert world.calculate_total_records(store) == 3
    overworld = world.dimensions[0]
    assert overworld.chunk_bounds_valid
    assert overworld.get_chunk_bounds() == (-3, 5, -2, 4)
    assert world.dimensions[1].get_chunk_bounds() is None

    list(world.scan(store))
    assert overworld.chunk_bounds_valid
    assert overworld.get_chunk_bounds() == (-3, 5, -2, 4)

    overworld.add_subchunk(20, 0, 0, overworld.get_chunk(5, -2).subchunks[0])
    assert not overworld.chunk_bounds_valid
    assert overworld.get_chunk_bounds() == (-3, 20, -2, 4)


def test_count_after_bounds_were_queried(worlddir):
    world = World(str(worlddir))
    store = MemoryStore({
        chunk_key(1, 1, 47, sub_tag=0): stone_column(0),
        b"scoreboard": nbt_record(),
    })
    for dimension in world.dimensions:
        assert dimension.get_chunk_bounds() is None
        assert dimension.chunk_bounds_valid

    assert world.calculate_total_records(store) == 2
    assert world.total_records == 2
    assert world.dimensions[0].get_chunk_bounds() == (1, 1, 1, 1)
    assert world.calculate_total_records(store) == 2


def test_dimension_parks_metadata_until_column_exists():
    dimension = Dimension(keys.OVERWORLD)
    heights = numpy.zeros((16, 16), dtype=numpy.int16)
    dimension.set_format_version(1, 1, 40)
    dimension.set_heightmap(1, 1, heights)
    assert not dimension.does_chunk_exist(1, 1)
    with pytest.raises(ChunkDoesntExist):
        dimension.get_chunk(1, 1)

    column = dimension.add_subchunk(1, 1, 0, None)
    assert column.format_version == 40
    assert column.heightmap is heights

    dimension.set_format_version(1, 1, 41)
    assert column.format_version == 41


def test_heightmap_record(worlddir):
    world = World(str(worlddir))
    heights = list(range(256))
    value = struct.pack("<256h", *heights) + bytes(256)
    store = MemoryStore({
        chunk_key(0, 0, 45): value,
        chunk_key(0, 0, 47, sub_tag=0): stone_column(0),
    })
    list(world.scan(store))
    heightmap = world.dimensions[0].get_chunk(0, 0).heightmap
    assert heightmap.shape == (16, 16)
    assert heightmap[1, 2] == 18


def test_decode_heightmap_short():
    with pytest.raises(Truncated):
        decode_heightmap(bytes(100))


def test_entity_records_are_decoded(worlddir):
    world = World(str(worlddir))
    value = nbt_record(id=1) + nbt_record(id=2)
    store = MemoryStore({chunk_key(0, 0, 49): value})
    records = list(world.scan(store))
    assert records[0].detail.tag == ChunkTag.BLOCK_ENTITY
    assert [tree["id"] for tree in records[0].value] == [1, 2]


def test_find_true_spawn(worlddir):
    world = World(str(worlddir))
    assert world.find_true_spawn() == (8, 32767, 8)
    list(world.scan(MemoryStore({chunk_key(0, 0, 47, sub_tag=4): stone_column(5)})))
    assert world.find_true_spawn() == (8, 70, 8)


def test_find_true_spawn_without_spawn(tmp_path):
    (tmp_path / "level.dat").write_bytes(level_dat(level_root(spawn=None)))
    world = World(str(tmp_path))
    assert world.spawn is None
    assert world.find_true_spawn() is None


def test_get_actors(worlddir):
    world = World(str(worlddir))
    digp = b"digp" + struct.pack("<ii", 0, 0)
    store = MemoryStore({
        digp: struct.pack("<QQ", 1, 2),
        keys.actor_key(1): nbt_record(Variant=3),
    })
    assert world.get_actors(store, digp) == [(1, {"Variant": 3})]
    with pytest.raises(KeyError):
        world.get_actors(store, b"digp" + struct.pack("<ii", 5, 5))


def test_parse_key(worlddir):
    world = World(str(worlddir))
    store = MemoryStore({b"map_7": nbt_record(scale=2)})
    record = world.parse_key(store, b"map_7")
    assert record.detail == 7
    assert record.value == {"scale": 2}
    with pytest.raises(KeyError):
        world.parse_key(store, b"map_8")


def test_metadata_dictionary():
    value = (struct.pack("<I", 2) +
             struct.pack("<Q", 11) + nbt_record(a=1) +
             struct.pack("<Q", 1 << 63) + nbt_record(b=2))
    entries = decode_metadata_dictionary(value)
    assert entries == {11: {"a": 1}, 1 << 63: {"b": 2}}
    with pytest.raises(Truncated):
        decode_metadata_dictionary(value[:-1])
