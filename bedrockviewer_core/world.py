#    This file is part of Bedrock Viewer.
#
#    Bedrock Viewer is free software: you can redistribute it and/or
#    modify it under the terms of the GNU General Public License as published
#    by the Free Software Foundation, either version 3 of the License, or (at
#    your option) any later version.
#
#    Bedrock Viewer is distributed in the hope that it will be useful,
#    but WITHOUT ANY WARRANTY; without even the implied warranty of
#    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU General
#    Public License for more details.
#
#    You should have received a copy of the GNU General Public License along
#    with Bedrock Viewer.  If not, see <http://www.gnu.org/licenses/>.

import os
import os.path
import logging
import struct
import threading
from collections import namedtuple

import numpy

from . import keys
from . import nbt
from .errors import DecodeError, Truncated, UnknownDimensionId
from .keys import ChunkTag, RecordKind
from .subchunk import decode_subchunk

"""
This module has routines for reading a whole world out of its record
store and keeping the decoded chunks around for lookups.

"""

PROGRESS_INTERVAL = 10000

AIR_BLOCKS = frozenset(("minecraft:air", "air"))

# chunk records whose value is a run of NBT compounds
NBT_CHUNK_TAGS = frozenset((ChunkTag.BLOCK_ENTITY, ChunkTag.ENTITY,
                            ChunkTag.PENDING_TICKS, ChunkTag.RANDOM_TICKS))

# non-chunk records whose value is a single NBT compound
NBT_RECORD_KINDS = frozenset((RecordKind.BIOME_DATA, RecordKind.OVERWORLD,
                              RecordKind.LOCAL_PLAYER, RecordKind.REMOTE_PLAYER,
                              RecordKind.VILLAGE, RecordKind.AUTONOMOUS_ENTITIES,
                              RecordKind.ACTOR_PREFIX, RecordKind.SCHEDULER_WT,
                              RecordKind.SCOREBOARD, RecordKind.MOB_EVENTS,
                              RecordKind.MAP, RecordKind.PORTALS))


class ChunkDoesntExist(Exception):
    pass


class UnsupportedVersion(Exception):
    pass


DecodedRecord = namedtuple("DecodedRecord", "key kind detail value error")

ScanError = namedtuple("ScanError", "key kind error")


_heightmap_size = 256 * 2
_metadata_header = struct.Struct("<I")
_metadata_hash = struct.Struct("<Q")


def decode_heightmap(value):
    """Data2D and Data3D records start with 256 little-endian int16
    heights. Returns them as a 16x16 array indexed [x, z].
    """
    if len(value) < _heightmap_size:
        raise Truncated(0, _heightmap_size, len(value))
    heights = numpy.frombuffer(value, dtype='<i2', count=256)
    return heights.astype(numpy.int16).reshape((16, 16))


def decode_metadata_dictionary(value, max_depth=nbt.MAX_DEPTH):
    """LevelChunkMetaDataDictionary: a uint32 entry count, then for each
    entry an 8-byte hash and one NBT compound. Returns {hash: tree}.
    """
    if len(value) < _metadata_header.size:
        raise Truncated(0, _metadata_header.size, len(value))
    count = _metadata_header.unpack_from(value, 0)[0]
    reader = nbt.NBTReader(value, little_endian=True, offset=_metadata_header.size,
                           max_depth=max_depth)
    entries = {}
    for _ in range(count):
        if reader.remaining < _metadata_hash.size:
            raise Truncated(reader.offset, _metadata_hash.size, reader.remaining)
        key_hash = _metadata_hash.unpack_from(value, reader.offset)[0]
        reader.offset += _metadata_hash.size
        entries[key_hash] = reader.read_tag()[1]
    return entries


class ChunkColumn(object):
    """A 16 block wide column of the world, made of up to one sub-chunk
    per vertical slot. Slots are signed; slot -4 covers y -64 to -49.

    subchunks maps slot -> SubChunk. format_version is taken from the
    chunk's Version record, heightmap from its Data2D/Data3D record; both
    stay None if the world didn't store them.

    """
    def __init__(self, chunk_x, chunk_z, dimension_id, format_version=None, heightmap=None):
        self.chunk_x = chunk_x
        self.chunk_z = chunk_z
        self.dimension_id = dimension_id
        self.format_version = format_version
        self.heightmap = heightmap
        self.subchunks = {}

    def __repr__(self):
        return "<ChunkColumn %d,%d dimension=%d subchunks=%d>" % (
            self.chunk_x, self.chunk_z, self.dimension_id, len(self.subchunks))

    def add_subchunk(self, slot, subchunk):
        if slot in self.subchunks:
            logging.debug("Replacing sub-chunk %d of chunk %d,%d", slot, self.chunk_x, self.chunk_z)
        self.subchunks[slot] = subchunk

    def get_subchunk(self, slot):
        return self.subchunks.get(slot)

    def get_block(self, x, y, z):
        """Returns the PaletteEntry at local x, z (0-15) and absolute y, or
        None if no sub-chunk covers y. Raises PaletteIndexOutOfRange for a
        cell whose index points outside its palette.
        """
        subchunk = self.subchunks.get(y // 16)
        if subchunk is None:
            return None
        return subchunk.block(x, y % 16, z)

    def get_block_name(self, x, y, z):
        entry = self.get_block(x, y, z)
        if entry is None:
            return None
        return entry.name

    def get_top_block(self, x, z):
        """Returns (y, name) of the highest block in column x, z that is
        neither air nor unresolvable, or None if there isn't one.
        """
        for slot in sorted(self.subchunks, reverse=True):
            names = self.subchunks[slot].names[x, z]
            for y in range(15, -1, -1):
                name = names[y]
                if name is not None and name not in AIR_BLOCKS:
                    return slot * 16 + y, name
        return None


class Dimension(object):
    """One of a world's dimensions (overworld, nether, the end). It owns
    the ChunkColumns decoded for that dimension and tracks their bounds.

    Merges into the chunk map are serialised with a lock, so several
    threads may feed one Dimension from disjoint parts of the key space.

    The chunk bounds are cached. Adding a chunk outside the cached box
    invalidates them, and the next get_chunk_bounds() rescans all chunks.

    """
    def __init__(self, dimension_id):
        self.dimension_id = dimension_id
        self.name = keys.dimension_name(dimension_id)
        self.chunks = {}
        self._lock = threading.Lock()

        # metadata records sort ahead of the sub-chunks of the same chunk,
        # so they are parked here until the column exists
        self._pending_versions = {}
        self._pending_heightmaps = {}

        self.unset_chunk_bounds()

    def __repr__(self):
        return "<Dimension %s chunks=%d>" % (self.name, len(self.chunks))

    def get_type(self):
        return self.name

    def unset_chunk_bounds(self):
        self.min_chunk_x = None
        self.max_chunk_x = None
        self.min_chunk_z = None
        self.max_chunk_z = None
        self.chunk_bounds_valid = False

    def add_to_chunk_bounds(self, chunk_x, chunk_z):
        if self.min_chunk_x is None:
            self.min_chunk_x = self.max_chunk_x = chunk_x
            self.min_chunk_z = self.max_chunk_z = chunk_z
            return
        self.min_chunk_x = min(self.min_chunk_x, chunk_x)
        self.max_chunk_x = max(self.max_chunk_x, chunk_x)
        self.min_chunk_z = min(self.min_chunk_z, chunk_z)
        self.max_chunk_z = max(self.max_chunk_z, chunk_z)

    def set_chunk_bounds_valid(self):
        self.chunk_bounds_valid = True

    def _in_bounds(self, chunk_x, chunk_z):
        return (self.min_chunk_x is not None and
                self.min_chunk_x <= chunk_x <= self.max_chunk_x and
                self.min_chunk_z <= chunk_z <= self.max_chunk_z)

    def get_chunk_bounds(self):
        """Returns (min_x, max_x, min_z, max_z) in chunk coordinates, or
        None if the dimension has no chunks.
        """
        with self._lock:
            if not self.chunk_bounds_valid:
                self.unset_chunk_bounds()
                for chunk_x, chunk_z in self.chunks:
                    self.add_to_chunk_bounds(chunk_x, chunk_z)
                self.set_chunk_bounds_valid()
            if self.min_chunk_x is None:
                return None
            return (self.min_chunk_x, self.max_chunk_x, self.min_chunk_z, self.max_chunk_z)

    def report_chunk_bounds(self):
        logging.info("Bounds (chunk): dimension %d (%s) X=(%s %s) Z=(%s %s)",
                     self.dimension_id, self.name, self.min_chunk_x, self.max_chunk_x,
                     self.min_chunk_z, self.max_chunk_z)

    def add_subchunk(self, chunk_x, chunk_z, slot, subchunk):
        """Merges a decoded sub-chunk into the column at chunk_x, chunk_z,
        creating the column if this is its first sub-chunk.
        """
        key = (chunk_x, chunk_z)
        with self._lock:
            column = self.chunks.get(key)
            if column is None:
                column = ChunkColumn(chunk_x, chunk_z, self.dimension_id,
                                     self._pending_versions.pop(key, None),
                                     self._pending_heightmaps.pop(key, None))
                self.chunks[key] = column
                if self.chunk_bounds_valid and not self._in_bounds(chunk_x, chunk_z):
                    self.chunk_bounds_valid = False
            column.add_subchunk(slot, subchunk)
        return column

    def set_format_version(self, chunk_x, chunk_z, version):
        with self._lock:
            column = self.chunks.get((chunk_x, chunk_z))
            if column is None:
                self._pending_versions[(chunk_x, chunk_z)] = version
            else:
                column.format_version = version

    def set_heightmap(self, chunk_x, chunk_z, heightmap):
        with self._lock:
            column = self.chunks.get((chunk_x, chunk_z))
            if column is None:
                self._pending_heightmaps[(chunk_x, chunk_z)] = heightmap
            else:
                column.heightmap = heightmap

    def does_chunk_exist(self, chunk_x, chunk_z):
        return (chunk_x, chunk_z) in self.chunks

    def get_chunk(self, chunk_x, chunk_z):
        """Returns the ChunkColumn at the given chunk coordinates. Raises
        ChunkDoesntExist if no sub-chunk of it has been decoded.
        """
        try:
            return self.chunks[(chunk_x, chunk_z)]
        except KeyError:
            raise ChunkDoesntExist("Chunk %s,%s doesn't exist in the %s" % (chunk_x, chunk_z, self.name))

    def iterate_chunks(self):
        """Returns an iterator over (chunk_x, chunk_z) of every chunk decoded
        so far, in no particular order.
        """
        return iter(list(self.chunks))


class World(object):
    """Encapsulates the concept of a Bedrock "world". A Bedrock world is a
    level.dat file with the world settings, a levelname.txt holding the
    display name, and a db directory with a LevelDB holding everything
    else: chunks for every dimension, players, villages, actors and so on.

    Opening a World only reads level.dat and levelname.txt. The records
    are read by scan(), which takes the store as an argument so that the
    choice of LevelDB binding stays with the caller. scan() decodes every
    sub-chunk into the matching Dimension and hands every other record
    back to the caller, decoded.

    dimensions is always a list of three Dimension objects, indexed by
    dimension id: overworld, nether and the end.

    """

    def __init__(self, worlddir):
        self.worlddir = worlddir

        self.dimensions = [Dimension(i) for i in (keys.OVERWORLD, keys.NETHER, keys.THE_END)]
        self.errors = []
        self.total_records = None

        level_dat = os.path.join(self.worlddir, "level.dat")
        if not os.path.exists(level_dat):
            raise ValueError("level.dat not found in %s" % self.worlddir)

        try:
            self.storage_version, _, data = nbt.load_level_dat(level_dat)
        except DecodeError as e:
            raise UnsupportedVersion("Could not read %s: %s" % (level_dat, e))
        if not isinstance(data, nbt.NBTCompound):
            raise UnsupportedVersion("%s does not hold a compound tag" % level_dat)
        logging.info("level.dat: storage version %d", self.storage_version)

        # This isn't much data, around 100 keys and values for vanilla worlds.
        self.leveldat = data

        self.name = self._read_level_name(data)

        try:
            self.seed = int(data['RandomSeed'])
        except KeyError:
            self.seed = 0 # oh well

        try:
            self.spawn = (int(data['SpawnX']), int(data['SpawnY']), int(data['SpawnZ']))
            logging.info("Found world spawn: x=%d y=%d z=%d", *self.spawn)
        except KeyError:
            self.spawn = None

    def _read_level_name(self, data):
        path = os.path.join(self.worlddir, "levelname.txt")
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                name = f.read().strip()
            logging.info("levelname.txt: level name is %r", name)
            if name:
                return name
        except IOError as e:
            logging.warning("Failed to read levelname.txt: %s", e)

        try:
            # level.dat should have the LevelName attribute so we'll use that
            return str(data['LevelName'])
        except KeyError:
            return os.path.basename(os.path.realpath(self.worlddir))

    def __repr__(self):
        return "<World %r>" % self.name

    def get_dimensions(self):
        return self.dimensions

    def get_dimension(self, index):
        if isinstance(index, int):
            return self.dimensions[index]
        candids = [x for x in self.dimensions if x.get_type() == index]
        if len(candids) > 0:
            return candids[0]
        return None

    def get_level_dat_data(self):
        # Return a copy
        return nbt.NBTCompound(self.leveldat)

    def _record_error(self, key, kind, error):
        logging.warning("Skipping %s record %r: %s", kind.value, key, error)
        self.errors.append(ScanError(key, kind, error))

    def calculate_total_records(self, store):
        """Counts the records in store and seeds every dimension's chunk
        bounds from the SubChunkPrefix keys. Does nothing if the records
        were already counted and all bounds are still known.
        """
        if self.total_records is not None and all(d.chunk_bounds_valid for d in self.dimensions):
            return self.total_records

        for dimension in self.dimensions:
            dimension.unset_chunk_bounds()

        logging.info("Calculating total records, this might take a while...")
        record_count = 0
        for key, _ in store.iterate():
            record_count += 1
            info = keys.parse_chunk_key(key)
            if info is None or info.tag != ChunkTag.SUBCHUNK_PREFIX:
                continue
            if info.dimension_id in (keys.OVERWORLD, keys.NETHER, keys.THE_END):
                self.dimensions[info.dimension_id].add_to_chunk_bounds(info.chunk_x, info.chunk_z)

        for dimension in self.dimensions:
            dimension.set_chunk_bounds_valid()
            dimension.report_chunk_bounds()

        logging.info("Total records: %d", record_count)
        self.total_records = record_count
        return record_count

    def _report_progress(self, record_count):
        if self.total_records:
            logging.info("Processing records: %d / %d (%.1f%%)", record_count, self.total_records,
                         100.0 * record_count / self.total_records)
        else:
            logging.info("Processing records: %d", record_count)

    def scan(self, store, cancel=None, progress_interval=PROGRESS_INTERVAL):
        """Walks every record in store. Sub-chunks and chunk metadata are
        merged into self.dimensions; every other record is yielded as a
        DecodedRecord(key, kind, detail, value, error).

        A record that fails to decode is logged, added to self.errors and
        skipped; it never ends the scan. cancel may be any object with an
        is_set() method, e.g. a threading.Event, and is checked between
        records.

        """
        logging.info("Parsing all records")
        record_count = 0
        for key, value in store.iterate():
            if cancel is not None and cancel.is_set():
                logging.info("Scan cancelled after %d records", record_count)
                break
            record_count += 1
            if progress_interval and record_count % progress_interval == 0:
                self._report_progress(record_count)

            result = self.parse_record(key, value)
            if result is not None:
                yield result

        logging.info("Read %d records", record_count)

    def parse_record(self, key, value):
        """Classifies and decodes one record. Chunk data is merged into the
        world and None is returned; anything else comes back as a
        DecodedRecord.
        """
        kind, detail = keys.classify(key)
        if kind == RecordKind.CHUNK:
            return self._parse_chunk_record(key, detail, value)

        try:
            decoded = self._decode_record_value(kind, value)
        except DecodeError as e:
            self._record_error(key, kind, e)
            return DecodedRecord(key, kind, detail, None, e)
        logging.debug("Found key - %s", kind.value)
        return DecodedRecord(key, kind, detail, decoded, None)

    def _decode_record_value(self, kind, value):
        if kind in NBT_RECORD_KINDS:
            return nbt.decode(value)[1]
        if kind == RecordKind.ACTOR_DIGEST_POINTER:
            return keys.read_actor_ids(value)
        if kind == RecordKind.LEVEL_CHUNK_METADATA_DICTIONARY:
            return decode_metadata_dictionary(value)
        if kind == RecordKind.FLAT_WORLD_LAYERS:
            # this one is JSON text
            return bytes(value).decode("utf-8", "replace")
        return None

    def _parse_chunk_record(self, key, info, value):
        logging.debug("%s-chunk: %d %d (type=0x%02x) (subtype=%r) (size=%d)", info.dimension_name,
                      info.chunk_x, info.chunk_z, info.tag, info.sub_tag, len(value))

        if info.dimension_id not in (keys.OVERWORLD, keys.NETHER, keys.THE_END):
            self._record_error(key, RecordKind.CHUNK, UnknownDimensionId(info.dimension_id))
            return None
        dimension = self.dimensions[info.dimension_id]

        try:
            if info.tag == ChunkTag.SUBCHUNK_PREFIX:
                self._merge_subchunk(dimension, key, info, value)
            elif info.tag in (ChunkTag.VERSION, ChunkTag.LEGACY_VERSION):
                if len(value) < 1:
                    raise Truncated(0, 1, 0)
                dimension.set_format_version(info.chunk_x, info.chunk_z, value[0])
            elif info.tag in (ChunkTag.DATA_2D, ChunkTag.DATA_3D):
                dimension.set_heightmap(info.chunk_x, info.chunk_z, decode_heightmap(value))
            elif info.tag in NBT_CHUNK_TAGS:
                trees = [tree for _, tree in nbt.decode_all(value)]
                return DecodedRecord(key, RecordKind.CHUNK, info, trees, None)
        except DecodeError as e:
            self._record_error(key, RecordKind.CHUNK, e)
        return None

    def _merge_subchunk(self, dimension, key, info, value):
        subchunk = decode_subchunk(value)

        slot = info.sub_tag if info.sub_tag is not None else 0
        if slot > 127:
            slot -= 256
        if subchunk.y_index is not None and subchunk.y_index != slot:
            logging.debug("Sub-chunk %d,%d: key says slot %d, value says %d",
                          info.chunk_x, info.chunk_z, slot, subchunk.y_index)
            slot = subchunk.y_index

        if subchunk.errors:
            logging.warning("Sub-chunk %d,%d slot %d: %d cells point outside the palette",
                            info.chunk_x, info.chunk_z, slot, len(subchunk.errors))
            self.errors.append(ScanError(key, RecordKind.CHUNK, subchunk.errors[0]))
        dimension.add_subchunk(info.chunk_x, info.chunk_z, slot, subchunk)

    def parse_key(self, store, key):
        """Looks up a single key in store and decodes it like scan() would.
        Raises KeyError if the key isn't there.
        """
        value = store.get(key)
        if value is None:
            raise KeyError(key)
        return self.parse_record(key, value)

    def get_actors(self, store, digest_key):
        """Resolves a digp record to the actors it lists. Returns a list of
        (actor_id, tree) pairs; actors missing from the store are left out.
        """
        value = store.get(digest_key)
        if value is None:
            raise KeyError(digest_key)
        actors = []
        for actor_id in keys.read_actor_ids(value):
            data = store.get(keys.actor_key(actor_id))
            if data is None:
                logging.debug("Actor %d listed in %r is missing", actor_id, digest_key)
                continue
            actors.append((actor_id, nbt.decode(data)[1]))
        return actors

    def get_block(self, dimension_id, x, y, z):
        """Returns the block name at world block coordinates x, y, z.
        Raises ChunkDoesntExist if the chunk was never decoded.
        """
        chunk = self.dimensions[dimension_id].get_chunk(x // 16, z // 16)
        return chunk.get_block_name(x % 16, y, z % 16)

    def find_true_spawn(self):
        """Returns the spawn point for this world. Bedrock often stores a
        placeholder spawn height, so the Y is taken as one above the
        highest solid block of the spawn column when that chunk has been
        decoded.

        Returns (x, y, z), or None if level.dat has no spawn.

        """
        if self.spawn is None:
            return None
        spawnX, spawnY, spawnZ = self.spawn

        overworld = self.dimensions[keys.OVERWORLD]
        try:
            chunk = overworld.get_chunk(spawnX // 16, spawnZ // 16)
        except ChunkDoesntExist:
            return (spawnX, spawnY, spawnZ)

        top = chunk.get_top_block(spawnX % 16, spawnZ % 16)
        if top is None:
            return (spawnX, spawnY, spawnZ)
        return (spawnX, top[0] + 1, spawnZ)
