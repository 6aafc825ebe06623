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

import enum
import logging
import re
import struct
from collections import namedtuple

from .errors import Truncated

"""
Classification of raw database keys.

Bedrock keeps everything in one LevelDB. Chunk data lives under binary
keys made of the chunk coordinates, an optional dimension id and a tag
byte; everything else lives under more or less readable string keys.
classify() sorts a key into one of the RecordKind values and pulls out
whatever the key itself encodes.

"""


class RecordKind(enum.Enum):
    CHUNK = "chunk"
    BIOME_DATA = "BiomeData"
    OVERWORLD = "Overworld"
    LOCAL_PLAYER = "~local_player"
    REMOTE_PLAYER = "player_"
    FLAT_WORLD_LAYERS = "game_flatworldlayers"
    VILLAGE = "VILLAGE_"
    AUTONOMOUS_ENTITIES = "AutonomousEntities"
    ACTOR_DIGEST_POINTER = "digp"
    ACTOR_PREFIX = "actorprefix"
    LEVEL_CHUNK_METADATA_DICTIONARY = "LevelChunkMetaDataDictionary"
    SCHEDULER_WT = "schedulerWT"
    SCOREBOARD = "scoreboard"
    MOB_EVENTS = "mobevents"
    MAP = "map_"
    PORTALS = "portals"
    UNKNOWN = "unknown"


class ChunkTag(enum.IntEnum):
    DATA_3D = 43
    VERSION = 44
    DATA_2D = 45
    DATA_2D_LEGACY = 46
    SUBCHUNK_PREFIX = 47
    LEGACY_TERRAIN = 48
    BLOCK_ENTITY = 49
    ENTITY = 50
    PENDING_TICKS = 51
    LEGACY_BLOCK_EXTRA_DATA = 52
    BIOME_STATE = 53
    FINALIZED_STATE = 54
    CONVERSION_DATA = 55
    BORDER_BLOCKS = 56
    HARDCODED_SPAWNERS = 57
    RANDOM_TICKS = 58
    CHECKSUMS = 59
    GENERATION_SEED = 60
    GENERATED_PRE_CAVES_AND_CLIFFS_BLENDING = 61
    BLENDING_BIOME_HEIGHT = 62
    METADATA_HASH = 63
    BLENDING_DATA = 64
    ACTOR_DIGEST_VERSION = 65
    LEGACY_VERSION = 118


OVERWORLD = 0
NETHER = 1
THE_END = 2

DIMENSION_NAMES = ("overworld", "nether", "the-end")
UNKNOWN_DIMENSION_NAME = "(UNKNOWN)"

# some old worlds store the nether and end ids as four ASCII digits
_LEGACY_DIMENSION_IDS = {
    0x33373639: NETHER,
    0x32373639: THE_END,
}

ClassifiedKey = namedtuple("ClassifiedKey", "kind detail")

ChunkKeyInfo = namedtuple("ChunkKeyInfo",
                          "chunk_x chunk_z dimension_id dimension_name tag sub_tag")

VillageKeyInfo = namedtuple("VillageKeyInfo", "kind dimension village_id")

DigestKeyInfo = namedtuple("DigestKeyInfo", "chunk_x chunk_z dimension_id")

VILLAGE_KINDS = ("INFO", "PLAYERS", "DWELLERS", "POI")

_LITERAL_KEYS = {
    b"BiomeData": RecordKind.BIOME_DATA,
    b"Overworld": RecordKind.OVERWORLD,
    b"~local_player": RecordKind.LOCAL_PLAYER,
    b"game_flatworldlayers": RecordKind.FLAT_WORLD_LAYERS,
    b"AutonomousEntities": RecordKind.AUTONOMOUS_ENTITIES,
    b"LevelChunkMetaDataDictionary": RecordKind.LEVEL_CHUNK_METADATA_DICTIONARY,
    b"mobevents": RecordKind.MOB_EVENTS,
    b"schedulerWT": RecordKind.SCHEDULER_WT,
    b"scoreboard": RecordKind.SCOREBOARD,
    b"portals": RecordKind.PORTALS,
}

_map_re = re.compile(br"^map_(-?\d+)$")

_coords = struct.Struct("<ii")
_coords_dim = struct.Struct("<iii")
_actor_id = struct.Struct("<Q")


def is_chunk_tag(tag):
    return 33 <= tag <= 65 or tag == 118


def normalize_dimension_id(raw):
    """Maps a raw dimension id to 0, 1 or 2. Returns None if it's none of
    the known dimensions.
    """
    raw = _LEGACY_DIMENSION_IDS.get(raw, raw)
    if raw in (OVERWORLD, NETHER, THE_END):
        return raw
    return None


def dimension_name(dimension_id):
    if dimension_id in (OVERWORLD, NETHER, THE_END):
        return DIMENSION_NAMES[dimension_id]
    return UNKNOWN_DIMENSION_NAME


def parse_chunk_key(key):
    """Returns a ChunkKeyInfo for a key shaped like a chunk key, or None.

    9 and 10 byte keys are overworld chunks: x, z, tag[, sub tag].
    13 and 14 byte keys carry a dimension id: x, z, dimension, tag[, sub tag].

    """
    size = len(key)
    if size in (9, 10):
        tag_at = 8
    elif size in (13, 14):
        tag_at = 12
    else:
        return None

    tag = key[tag_at]
    if not is_chunk_tag(tag):
        return None
    try:
        tag = ChunkTag(tag)
    except ValueError:
        logging.debug("Chunk-shaped key with unassigned tag 0x%02x", tag)
        return None

    if tag_at == 8:
        chunk_x, chunk_z = _coords.unpack_from(key, 0)
        dimension_id = OVERWORLD
    else:
        chunk_x, chunk_z, raw_dimension = _coords_dim.unpack_from(key, 0)
        dimension_id = normalize_dimension_id(raw_dimension)
        if dimension_id is None:
            logging.warning("Found unknown chunk dimension id 0x%x at chunk %d,%d",
                            raw_dimension & 0xffffffff, chunk_x, chunk_z)
            dimension_id = raw_dimension

    sub_tag = key[tag_at + 1] if size in (10, 14) else None

    return ChunkKeyInfo(chunk_x, chunk_z, dimension_id,
                        dimension_name(dimension_id), tag, sub_tag)


def parse_village_key(key):
    """VILLAGE_[<dimension>_]<uuid>_<INFO|PLAYERS|DWELLERS|POI>"""
    parts = key[len(b"VILLAGE_"):].decode("utf-8", "replace").split("_")
    kind = parts[-1] if parts[-1] in VILLAGE_KINDS else None
    if kind is not None:
        parts = parts[:-1]
    if len(parts) >= 2:
        return VillageKeyInfo(kind, parts[0], "_".join(parts[1:]))
    return VillageKeyInfo(kind, None, parts[0] if parts else "")


def parse_digest_key(key):
    rest = key[len(b"digp"):]
    if len(rest) == 8:
        chunk_x, chunk_z = _coords.unpack_from(rest, 0)
        return DigestKeyInfo(chunk_x, chunk_z, OVERWORLD)
    if len(rest) == 12:
        chunk_x, chunk_z, raw_dimension = _coords_dim.unpack_from(rest, 0)
        dimension_id = normalize_dimension_id(raw_dimension)
        return DigestKeyInfo(chunk_x, chunk_z,
                             raw_dimension if dimension_id is None else dimension_id)
    return None


def classify(key):
    """Classifies a raw database key. Never raises: anything that isn't
    recognised comes back as RecordKind.UNKNOWN with the key as detail.

    Returns a ClassifiedKey(kind, detail), where detail is

    * a ChunkKeyInfo for CHUNK
    * the player id (str) for REMOTE_PLAYER
    * a VillageKeyInfo for VILLAGE
    * the actor id (int) for ACTOR_PREFIX, or None if malformed
    * a DigestKeyInfo for ACTOR_DIGEST_POINTER, or None if malformed
    * the map id (int) for MAP
    * the raw key for UNKNOWN
    * None for everything else

    """
    key = bytes(key)

    kind = _LITERAL_KEYS.get(key)
    if kind is not None:
        return ClassifiedKey(kind, None)

    # string prefixes are matched before the chunk shape, "map_<digits>"
    # can be 9 or 10 bytes long with a valid tag byte at the end
    if key.startswith(b"player_"):
        return ClassifiedKey(RecordKind.REMOTE_PLAYER,
                             key[len(b"player_"):].decode("utf-8", "replace"))
    if key.startswith(b"VILLAGE_"):
        return ClassifiedKey(RecordKind.VILLAGE, parse_village_key(key))
    if key.startswith(b"actorprefix"):
        rest = key[len(b"actorprefix"):]
        actor_id = _actor_id.unpack(rest)[0] if len(rest) == 8 else None
        return ClassifiedKey(RecordKind.ACTOR_PREFIX, actor_id)
    if key.startswith(b"digp"):
        return ClassifiedKey(RecordKind.ACTOR_DIGEST_POINTER, parse_digest_key(key))

    m = _map_re.match(key)
    if m:
        return ClassifiedKey(RecordKind.MAP, int(m.group(1)))

    info = parse_chunk_key(key)
    if info is not None:
        return ClassifiedKey(RecordKind.CHUNK, info)

    return ClassifiedKey(RecordKind.UNKNOWN, key)


def actor_key(actor_id):
    """The actorprefix key an actor id from a digp record points at."""
    return b"actorprefix" + _actor_id.pack(actor_id)


def read_actor_ids(value):
    """A digp value is a run of 8-byte little-endian actor ids."""
    if len(value) % _actor_id.size:
        whole = len(value) - len(value) % _actor_id.size
        raise Truncated(whole, _actor_id.size, len(value) - whole)
    return [_actor_id.unpack_from(value, i)[0]
            for i in range(0, len(value), _actor_id.size)]
